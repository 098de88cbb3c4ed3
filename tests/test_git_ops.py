from __future__ import annotations

from pathlib import Path

import pytest

from featurecrew.git_ops import GitOps, MergeConflictError, PartialMergeError, WorktreeEntry
from featurecrew.shell import CommandError


class ScriptedRun:
    """Stands in for shell.run, failing commands whose argv contains a configured key."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.outputs: dict[str, str] = {}
        self.failures: dict[str, list[CommandError]] = {}

    def fail(self, key: str, *, stdout: str = "", stderr: str = "") -> None:
        self.failures.setdefault(key, []).append(
            CommandError("Command failed", stdout=stdout, stderr=stderr, exit_code=1)
        )

    def __call__(self, argv: list[str], **kwargs: object) -> str:
        _ = kwargs
        self.calls.append(argv)
        joined = " ".join(argv)
        for key, errors in self.failures.items():
            if key in joined and errors:
                raise errors.pop(0)
        for key, out in self.outputs.items():
            if key in joined:
                return out
        return ""


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> ScriptedRun:
    scripted = ScriptedRun()
    monkeypatch.setattr("featurecrew.git_ops.run", scripted)
    return scripted


def test_list_worktrees_parses_porcelain(fake_run: ScriptedRun) -> None:
    fake_run.outputs["worktree list"] = (
        "worktree /code/shop\nHEAD abc\nbranch refs/heads/main\n\n"
        "worktree /code/shop-pay\nHEAD def\nbranch refs/heads/feature/pay\n\n"
        "worktree /code/detached\nHEAD 123\ndetached\n"
    )
    git = GitOps()

    assert git.list_worktrees(Path("/code/shop")) == (
        WorktreeEntry(path=Path("/code/shop"), branch="main"),
        WorktreeEntry(path=Path("/code/shop-pay"), branch="feature/pay"),
        WorktreeEntry(path=Path("/code/detached"), branch=None),
    )
    assert git.is_branch_in_worktree(Path("/code/shop"), "feature/pay") is True
    assert git.is_branch_in_worktree(Path("/code/shop"), "feature/other") is False


def test_branch_queries(fake_run: ScriptedRun) -> None:
    fake_run.outputs["branch --list feature/pay"] = "  feature/pay\n"
    fake_run.outputs["--show-current"] = "feature/pay-issue-10\n"
    fake_run.fail("rev-parse --verify --quiet origin/missing")
    git = GitOps()
    repo = Path("/r")

    assert git.branch_exists(repo, "feature/pay") is True
    assert git.branch_exists(repo, "feature/none") is False
    assert git.current_branch(repo) == "feature/pay-issue-10"
    assert git.ref_exists(repo, "origin/missing") is False
    assert git.ref_exists(repo, "main") is True


def test_merge_conflict_raises_with_conflicted_files(fake_run: ScriptedRun) -> None:
    fake_run.fail(
        "merge main",
        stdout="CONFLICT (content): Merge conflict in src/app.ts\n"
        "Automatic merge failed; fix conflicts and then commit the result.",
    )
    fake_run.outputs["--diff-filter=U"] = "src/app.ts\n.featurecrew/pay/CHANGELOG.md\n"

    with pytest.raises(MergeConflictError, match="MERGE_CONFLICT") as exc_info:
        GitOps().merge(Path("/r"), "main")

    assert exc_info.value.files == ("src/app.ts", ".featurecrew/pay/CHANGELOG.md")
    assert isinstance(exc_info.value, CommandError)


def test_merge_in_unfinished_state_is_partial_merge(fake_run: ScriptedRun) -> None:
    fake_run.fail(
        "merge main",
        stderr="error: Merging is not possible because you have unmerged files.",
    )
    with pytest.raises(PartialMergeError):
        GitOps().merge(Path("/r"), "main")


def test_merge_other_failures_propagate_unchanged(fake_run: ScriptedRun) -> None:
    fake_run.fail("merge main", stderr="fatal: not something we can merge")
    with pytest.raises(CommandError) as exc_info:
        GitOps().merge(Path("/r"), "main")
    assert not isinstance(exc_info.value, MergeConflictError | PartialMergeError)


def test_commit_treats_nothing_to_commit_as_non_error(fake_run: ScriptedRun) -> None:
    git = GitOps()
    assert git.commit(Path("/r"), "feat(#10): add model\n\nCloses #10") is True

    fake_run.fail("commit -m", stdout="nothing to commit, working tree clean")
    assert git.commit(Path("/r"), "feat(#10): add model") is False

    fake_run.fail("commit -m", stderr="fatal: unable to auto-detect email address")
    with pytest.raises(CommandError):
        git.commit(Path("/r"), "feat(#10): add model")


def test_safe_checkout_stashes_and_restores(fake_run: ScriptedRun) -> None:
    fake_run.fail(
        "checkout feature/pay",
        stderr="error: Your local changes to the following files would be overwritten by checkout",
    )

    GitOps().safe_checkout(Path("/r"), "feature/pay")

    commands = [" ".join(call[3:]) for call in fake_run.calls]
    assert commands[0] == "checkout feature/pay"
    assert commands[1].startswith("stash push --include-untracked -m")
    assert commands[2:] == ["checkout feature/pay", "stash pop"]


def test_safe_checkout_tolerates_failed_stash_restore(fake_run: ScriptedRun) -> None:
    fake_run.fail("checkout feature/pay", stderr="would be overwritten by checkout")
    fake_run.fail("stash pop", stderr="CONFLICT")

    GitOps().safe_checkout(Path("/r"), "feature/pay")

    assert fake_run.calls[-1][3:] == ["stash", "pop"]


def test_safe_checkout_propagates_other_failures(fake_run: ScriptedRun) -> None:
    fake_run.fail("checkout feature/pay", stderr="pathspec did not match")
    with pytest.raises(CommandError):
        GitOps().safe_checkout(Path("/r"), "feature/pay")
    assert len(fake_run.calls) == 1


def test_delete_branch_is_best_effort(fake_run: ScriptedRun) -> None:
    fake_run.fail("branch -D", stderr="not found")

    GitOps().delete_branch(Path("/r"), "feature/pay-issue-10")

    assert [call[3:] for call in fake_run.calls] == [
        ["branch", "-D", "feature/pay-issue-10"],
        ["push", "origin", "--delete", "feature/pay-issue-10"],
    ]


def test_conflict_helpers_issue_expected_commands(fake_run: ScriptedRun) -> None:
    git = GitOps()
    repo = Path("/r")
    git.checkout_side(repo, "a.md", "theirs")
    git.show_stage(repo, 2, "a.md")
    git.add(repo, "a.md")
    git.remove(repo, "b.md")
    git.abort_merge(repo)
    git.add_worktree(repo, Path("/wt/shop-pay"), "feature/pay")

    assert [call[3:] for call in fake_run.calls] == [
        ["checkout", "--theirs", "--", "a.md"],
        ["show", ":2:a.md"],
        ["add", "--", "a.md"],
        ["rm", "-f", "--quiet", "--", "b.md"],
        ["merge", "--abort"],
        ["worktree", "add", "/wt/shop-pay", "feature/pay"],
    ]


def test_merge_union_feeds_stages_to_merge_file(monkeypatch: pytest.MonkeyPatch) -> None:
    stages = {":2:CHANGELOG.md": "base\nours\n", ":3:CHANGELOG.md": "base\ntheirs\n"}
    seen: dict[str, str] = {}

    def scripted(argv: list[str], **kwargs: object) -> str:
        _ = kwargs
        if argv[:2] == ["git", "merge-file"]:
            assert argv[2:4] == ["-p", "--union"]
            for path in argv[4:]:
                seen[Path(path).name] = Path(path).read_text(encoding="utf-8")
            return "base\nours\ntheirs\n"
        ref = argv[-1]
        if ref not in stages:
            raise CommandError("Command failed", exit_code=128)
        return stages[ref]

    monkeypatch.setattr("featurecrew.git_ops.run", scripted)

    merged = GitOps().merge_union(Path("/r"), "CHANGELOG.md")

    assert merged == "base\nours\ntheirs\n"
    # No common ancestor stage: both sides merge against an empty base.
    assert seen == {"ours": "base\nours\n", "base": "", "theirs": "base\ntheirs\n"}


def test_merge_union_requires_both_sides(fake_run: ScriptedRun) -> None:
    fake_run.fail(":3:new.md")

    with pytest.raises(CommandError):
        GitOps().merge_union(Path("/r"), "new.md")
    assert not any("merge-file" in call for call in fake_run.calls)
