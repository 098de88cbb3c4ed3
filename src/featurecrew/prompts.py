from __future__ import annotations

from collections.abc import Sequence
import logging
from pathlib import Path

from featurecrew.feedback import APPROVE_MARKER, REJECT_MARKER, REWORK_MARKER
from featurecrew.models import FeatureSpec, FeatureTask
from featurecrew.observability import log_event


LOGGER = logging.getLogger("featurecrew.prompts")

FIRST_ATTEMPT_FEEDBACK = "No previous attempts - this is the first implementation attempt."


def readable_feature_title(feature_name: str) -> str:
    """``user-billing`` -> ``User Billing``."""
    return " ".join(word[:1].upper() + word[1:].lower() for word in feature_name.split("-") if word)


def load_profile_content(profile: str, *, profiles_dir: Path | None) -> str:
    if profiles_dir is not None:
        path = profiles_dir / profile.lower() / "review.md"
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            log_event(LOGGER, "reviewer_profile_missing", profile=profile, path=str(path))
    return (
        f"## {profile.upper()} Review Focus\n\n"
        "No specific profile guidance available. Use general code review principles."
    )


def build_solver_prompt(
    *,
    task: FeatureTask,
    feature_name: str,
    worktree_path: Path,
    branch: str,
    architecture_notes_path: Path,
    previous_feedback: str | None,
) -> str:
    feedback_section = previous_feedback or FIRST_ATTEMPT_FEEDBACK
    return f"""
You are the solver agent for feature {feature_name}.

Task:
- Implement issue #{task.issue_number} in the working directory: {worktree_path}
- You are on branch: {branch}
- This is attempt {task.attempts} of {task.max_attempts}.
- Read the architecture notes first if present: {architecture_notes_path}
- Keep the change scoped to this issue and consistent with the existing codebase.
- Add or update tests for the behavior you change.

Output requirements:
- Edit repository files directly; the orchestrator commits and pushes your work.
- Do not commit, push, or open pull requests yourself.
- Finish with a short summary of what changed and why.

Issue #{task.issue_number}: {task.title}

{task.description}

Previous review feedback:
{feedback_section}
""".strip()


def build_shared_reviewer_prompt(
    *,
    task: FeatureTask,
    feature_name: str,
    worktree_path: Path,
) -> str:
    """Reviewer prompt shared by every profile in one round; profile details are appended later."""
    return f"""
You are a reviewer agent for feature {feature_name}.

Task:
- Review pull request #{task.pr_number}, which implements issue #{task.issue_number}: {task.title}
- The changes are checked out in: {worktree_path}
- This is review round {task.attempts} of {task.max_attempts}.
- Inspect the diff against the target branch and run the relevant tests.
- Check that the issue is fully addressed.

Response format:
- Start your response with exactly one verdict line: `{APPROVE_MARKER}` or `{REJECT_MARKER}`.
- When rejecting, include `{REWORK_MARKER}` if the implementation must be substantially reworked.
- List each requested change as its own sentence, for example "Must add tests for the refund path."
- Keep the review concrete; the solver only sees your text.

Issue description:
{task.description}
""".strip()


def build_reviewer_prompt(
    *, shared_prompt: str, reviewer_id: str, profile: str, profile_content: str
) -> str:
    return f"""
{shared_prompt}

Reviewer: {reviewer_id} ({profile.lower()} profile)

{profile_content.strip()}
""".strip()


def build_architecture_prompt(
    *,
    spec: FeatureSpec,
    main_repo_path: Path,
    worktree_path: Path,
    tool_dir: Path,
) -> str:
    return f"""
You are the architecture agent for feature {spec.name}.

Task:
- Plan the feature described below for the repository at {main_repo_path}.
- Work inside the feature worktree: {worktree_path}
- Record design decisions in {tool_dir / "ARCHITECTURE_NOTES.md"}.
- Add a summary of the planned work to {tool_dir / "CHANGELOG.md"}.
- Break the work into GitHub issues with `gh issue create`, labelled `{spec.name}`.
- Declare ordering in issue bodies with lines such as "Depends on #123".
- Name the reviewers each issue needs with a line such as "This issue requires: frontend, backend".

Output requirements:
- Finish by listing every created issue as `#<number>: <title>`, one per line.

Feature request:
{spec.description}
""".strip()


def build_conflict_resolution_prompt(*, path: str, branch: str, repo: Path) -> str:
    return f"""
You are resolving a git merge conflict in {repo}.

Task:
- The file {path} has conflict markers from merging {branch}.
- Edit the file so it keeps the intent of both sides and contains no conflict markers.
- Do not stage, commit, or abort the merge; only edit {path}.
""".strip()


def render_issue_pr_title(task: FeatureTask) -> str:
    return f"feat(#{task.issue_number}): {task.title}"


def render_issue_pr_body(task: FeatureTask, *, feature_name: str) -> str:
    return f"""
## Issue
Closes #{task.issue_number}

## Changes
- Automated changes for issue #{task.issue_number}

## Review Notes
This PR is part of multi-agent feature development for {feature_name}.

Attempt: {task.attempts} of {task.max_attempts}
""".strip()


def render_feature_pr_body(spec: FeatureSpec, completed: Sequence[FeatureTask]) -> str:
    readable = readable_feature_title(spec.name)
    completed_lines = "\n".join(f"- [x] #{task.issue_number}: {task.title}" for task in completed)
    return f"""
## {readable}

{spec.description}

### Completed Issues
{completed_lines or "- (none)"}

### Review Summary
All tasks have been reviewed and approved by their required reviewer agents.

### Details
- **Feature Branch:** `feature/{spec.name}`
- **Architecture Notes:** `.featurecrew/{spec.name}/ARCHITECTURE_NOTES.md`
""".strip()
