from __future__ import annotations

from pathlib import Path

from featurecrew.models import FeatureSpec, FeatureTask
from featurecrew.prompts import (
    FIRST_ATTEMPT_FEEDBACK,
    build_architecture_prompt,
    build_conflict_resolution_prompt,
    build_reviewer_prompt,
    build_shared_reviewer_prompt,
    build_solver_prompt,
    load_profile_content,
    readable_feature_title,
    render_feature_pr_body,
    render_issue_pr_body,
    render_issue_pr_title,
)


def _task(**overrides: object) -> FeatureTask:
    values: dict[str, object] = {
        "issue_number": 10,
        "title": "Add payment model",
        "description": "Create the Payment model.\n\nDepends on #9",
        "dependencies": (9,),
        "worktree_path": Path("/code/shop-pay"),
        "attempts": 2,
        "pr_number": 41,
    }
    values.update(overrides)
    return FeatureTask(**values)  # type: ignore[arg-type]


def test_readable_feature_title() -> None:
    assert readable_feature_title("user-billing") == "User Billing"
    assert readable_feature_title("PAY") == "Pay"
    assert readable_feature_title("a--b") == "A B"


def test_solver_prompt_includes_attempt_and_feedback() -> None:
    prompt = build_solver_prompt(
        task=_task(),
        feature_name="pay",
        worktree_path=Path("/code/shop-pay"),
        branch="feature/pay-issue-10",
        architecture_notes_path=Path("/code/shop-pay/.featurecrew/pay/ARCHITECTURE_NOTES.md"),
        previous_feedback="## Feedback from previous reviews (attempt 2)",
    )

    assert "attempt 2 of 3" in prompt
    assert "Issue #10: Add payment model" in prompt
    assert "feature/pay-issue-10" in prompt
    assert prompt.endswith("## Feedback from previous reviews (attempt 2)")
    assert FIRST_ATTEMPT_FEEDBACK not in prompt


def test_solver_prompt_first_attempt_text() -> None:
    prompt = build_solver_prompt(
        task=_task(attempts=1),
        feature_name="pay",
        worktree_path=Path("/w"),
        branch="b",
        architecture_notes_path=Path("/w/notes.md"),
        previous_feedback=None,
    )
    assert prompt.endswith(FIRST_ATTEMPT_FEEDBACK)


def test_reviewer_prompt_combines_shared_text_and_profile() -> None:
    shared = build_shared_reviewer_prompt(
        task=_task(), feature_name="pay", worktree_path=Path("/code/shop-pay")
    )
    assert "pull request #41" in shared
    assert "✅ APPROVE" in shared and "❌ REJECT" in shared

    prompt = build_reviewer_prompt(
        shared_prompt=shared,
        reviewer_id="reviewer-1",
        profile="Backend",
        profile_content="## BACKEND focus\n",
    )
    assert prompt.startswith(shared)
    assert "Reviewer: reviewer-1 (backend profile)" in prompt
    assert prompt.endswith("## BACKEND focus")


def test_load_profile_content(tmp_path: Path) -> None:
    (tmp_path / "devops").mkdir()
    (tmp_path / "devops" / "review.md").write_text("Check the CI config.", encoding="utf-8")

    assert load_profile_content("DevOps", profiles_dir=tmp_path) == "Check the CI config."
    assert load_profile_content("frontend", profiles_dir=tmp_path).startswith(
        "## FRONTEND Review Focus"
    )
    assert "general code review" in load_profile_content("backend", profiles_dir=None)


def test_architecture_and_conflict_prompts() -> None:
    spec = FeatureSpec(name="pay", description="Accept card payments", architecture_mode=True)
    arch = build_architecture_prompt(
        spec=spec,
        main_repo_path=Path("/code/shop"),
        worktree_path=Path("/code/shop-pay"),
        tool_dir=Path("/code/shop-pay/.featurecrew/pay"),
    )
    assert "labelled `pay`" in arch
    assert arch.endswith("Accept card payments")

    conflict = build_conflict_resolution_prompt(path="src/app.ts", branch="main", repo=Path("/r"))
    assert "src/app.ts" in conflict and "merging main" in conflict


def test_pull_request_rendering() -> None:
    task = _task()
    assert render_issue_pr_title(task) == "feat(#10): Add payment model"
    assert render_issue_pr_body(task, feature_name="pay").startswith("## Issue\nCloses #10")

    spec = FeatureSpec(name="card-payments", description="Accept cards", is_parent_feature=True)
    body = render_feature_pr_body(spec, [task, _task(issue_number=11, title="Add API")])
    assert body.startswith("## Card Payments\n\nAccept cards")
    assert "- [x] #10: Add payment model\n- [x] #11: Add API" in body
    assert "`feature/card-payments`" in body

    assert "- (none)" in render_feature_pr_body(spec, [])
