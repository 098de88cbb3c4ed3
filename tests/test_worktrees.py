from __future__ import annotations

from pathlib import Path

import pytest

from featurecrew.git_ops import MergeConflictError
from featurecrew.shell import CommandError
from featurecrew.state import StateStore
from featurecrew.worktrees import WorktreeLifecycleManager, WorktreeSyncError


class FakeGit:
    """Records git calls and simulates branches, worktrees and the current branch."""

    def __init__(self) -> None:
        self.calls: list[tuple[object, ...]] = []
        self.branches: set[str] = {"main"}
        self.remote_refs: set[str] = set()
        self.worktree_branches: set[str] = set()
        self.current: dict[Path, str] = {}
        self.merge_error: MergeConflictError | None = None
        self.commit_result = True

    def checkout(self, repo: Path, branch: str) -> None:
        self.calls.append(("checkout", repo, branch))
        self.current[repo] = branch

    def safe_checkout(self, repo: Path, branch: str) -> None:
        self.calls.append(("safe_checkout", repo, branch))
        self.current[repo] = branch

    def pull(self, repo: Path, branch: str) -> None:
        self.calls.append(("pull", repo, branch))

    def push(self, repo: Path, branch: str) -> None:
        self.calls.append(("push", repo, branch))

    def create_branch(self, repo: Path, branch: str) -> None:
        self.calls.append(("create_branch", repo, branch))
        self.branches.add(branch)
        self.current[repo] = branch

    def branch_exists(self, repo: Path, branch: str) -> bool:
        return branch in self.branches

    def ref_exists(self, repo: Path, ref: str) -> bool:
        return ref in self.branches or ref in self.remote_refs

    def is_branch_in_worktree(self, repo: Path, branch: str) -> bool:
        return branch in self.worktree_branches

    def current_branch(self, repo: Path) -> str:
        return self.current.get(repo, "main")

    def merge(self, repo: Path, ref: str) -> None:
        self.calls.append(("merge", repo, ref))
        if self.merge_error is not None:
            raise self.merge_error

    def add_worktree(self, repo: Path, path: Path, branch: str) -> None:
        self.calls.append(("add_worktree", path, branch))
        path.mkdir(parents=True)
        self.current[path] = branch

    def add_all(self, repo: Path) -> None:
        self.calls.append(("add_all", repo))

    def add(self, repo: Path, *paths: str) -> None:
        self.calls.append(("add", repo, *paths))

    def commit(self, repo: Path, message: str) -> bool:
        self.calls.append(("commit", repo, message))
        return self.commit_result

    def delete_branch(self, repo: Path, branch: str) -> None:
        self.calls.append(("delete_branch", repo, branch))


class FakeResolver:
    def __init__(self, resolved: bool) -> None:
        self.resolved = resolved
        self.calls: list[tuple[Path, str]] = []

    def handle_merge_conflict(self, repo: Path, branch: str, error: MergeConflictError) -> bool:
        self.calls.append((repo, branch))
        return self.resolved


def _manager(
    tmp_path: Path, git: FakeGit, *, resolved: bool = True, state: StateStore | None = None
) -> tuple[WorktreeLifecycleManager, FakeResolver]:
    resolver = FakeResolver(resolved)
    manager = WorktreeLifecycleManager(
        git=git,  # type: ignore[arg-type]
        resolver=resolver,  # type: ignore[arg-type]
        main_repo_path=tmp_path / "shop",
        base_worktree_path=tmp_path,
        project_name="shop",
        feature_name="pay",
        state=state,
        clock=lambda: 50.0,
    )
    return manager, resolver


def test_naming(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path, FakeGit())
    assert manager.path == tmp_path / "shop-pay"
    assert manager.feature_branch == "feature/pay"
    assert manager.issue_branch(10) == "feature/pay-issue-10"
    assert manager.tool_dir == tmp_path / "shop-pay" / ".featurecrew" / "pay"
    with pytest.raises(RuntimeError, match="not been set up"):
        _ = manager.target_branch


def test_setup_for_plain_feature_uses_base_branch(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)

    assert manager.setup_for_feature("main", is_parent_feature=False) == "main"

    main_repo = tmp_path / "shop"
    assert git.calls == [
        ("checkout", main_repo, "main"),
        ("pull", main_repo, "main"),
        ("add_worktree", manager.path, "main"),
    ]
    assert manager.target_branch == "main"


def test_setup_for_parent_feature_creates_and_syncs_branch(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)

    assert manager.setup_for_feature("main", is_parent_feature=True) == "feature/pay"

    main_repo = tmp_path / "shop"
    assert git.calls == [
        ("checkout", main_repo, "main"),
        ("pull", main_repo, "main"),
        ("create_branch", main_repo, "feature/pay"),
        ("push", main_repo, "feature/pay"),
        ("merge", main_repo, "main"),
        ("checkout", main_repo, "main"),
        ("add_worktree", manager.path, "feature/pay"),
    ]


def test_existing_feature_branch_in_worktree_is_left_alone(tmp_path: Path) -> None:
    git = FakeGit()
    git.branches.add("feature/pay")
    git.worktree_branches.add("feature/pay")
    manager, _ = _manager(tmp_path, git)
    manager.path.mkdir()
    git.current[manager.path] = "feature/pay"

    manager.setup_for_feature("main", is_parent_feature=True)

    assert ("create_branch", tmp_path / "shop", "feature/pay") not in git.calls
    assert ("checkout", tmp_path / "shop", "feature/pay") not in git.calls
    assert ("merge", manager.path, "main") in git.calls
    assert not any(call[0] == "add_worktree" for call in git.calls)


def test_existing_feature_branch_outside_worktree_is_checked_out(tmp_path: Path) -> None:
    git = FakeGit()
    git.branches.add("feature/pay")
    manager, _ = _manager(tmp_path, git)

    manager.ensure_feature_branch()

    assert git.calls == [("checkout", tmp_path / "shop", "feature/pay")]


def test_ensure_worktree_is_idempotent(tmp_path: Path) -> None:
    git = FakeGit()
    store = StateStore(tmp_path / "state", debounce_seconds=0.0, clock=lambda: 10.0)
    manager, _ = _manager(tmp_path, git, state=store)

    manager.ensure_worktree("feature/pay")
    manager.ensure_worktree("feature/pay")

    assert [call for call in git.calls if call[0] == "add_worktree"] == [
        ("add_worktree", manager.path, "feature/pay")
    ]
    record = store.get_worktree("shop-pay")
    assert record is not None
    assert record.branch == "feature/pay"
    assert record.created_at == 50.0
    store.close()


def test_verify_worktree_branch_switches_only_on_mismatch(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)
    git.current[manager.path] = "feature/pay"

    manager.verify_worktree_branch("feature/pay")
    assert git.calls == []

    manager.verify_worktree_branch("feature/pay-issue-10")
    assert git.calls == [("safe_checkout", manager.path, "feature/pay-issue-10")]


def test_sync_conflict_resolved_returns_main_clone_to_base(tmp_path: Path) -> None:
    git = FakeGit()
    git.merge_error = MergeConflictError(
        "MERGE_CONFLICT", files=("CHANGELOG.md",), source=CommandError("merge")
    )
    manager, resolver = _manager(tmp_path, git, resolved=True)

    manager.sync_feature_branch("feature/pay", "main")

    assert resolver.calls == [(tmp_path / "shop", "main")]
    assert git.calls[-1] == ("checkout", tmp_path / "shop", "main")


def test_sync_conflict_unresolved_raises(tmp_path: Path) -> None:
    git = FakeGit()
    git.merge_error = MergeConflictError(
        "MERGE_CONFLICT", files=("src/app.ts",), source=CommandError("merge")
    )
    manager, _ = _manager(tmp_path, git, resolved=False)

    with pytest.raises(WorktreeSyncError, match="manual intervention required"):
        manager.sync_feature_branch("feature/pay", "main")


def test_setup_for_architecture_creates_tool_files(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)

    assert manager.setup_for_architecture("main") == "feature/pay"

    assert (manager.tool_dir / "ARCHITECTURE_NOTES.md").exists()
    assert (manager.tool_dir / "CHANGELOG.md").exists()
    assert manager.target_branch == "feature/pay"


def test_setup_issue_branch_creates_from_target_or_reuses(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)
    manager.setup_for_feature("main", is_parent_feature=False)
    git.calls.clear()

    assert manager.setup_issue_branch(10) == "feature/pay-issue-10"
    assert git.calls == [("create_branch", manager.path, "feature/pay-issue-10")]

    git.calls.clear()
    assert manager.setup_issue_branch(10) == "feature/pay-issue-10"
    assert git.calls == []

    git.remote_refs.add("origin/feature/pay-issue-11")
    manager.setup_issue_branch(11)
    assert git.calls == [("safe_checkout", manager.path, "feature/pay-issue-11")]


def test_return_to_target_branch_pulls_merged_work(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)
    manager.setup_for_feature("main", is_parent_feature=True)
    manager.setup_issue_branch(10)
    git.calls.clear()

    assert manager.return_to_target_branch() == "feature/pay"
    assert git.calls == [
        ("safe_checkout", manager.path, "feature/pay"),
        ("pull", manager.path, "feature/pay"),
    ]


def test_commit_issue_changes_pushes_only_when_committed(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)
    manager.tool_dir.mkdir(parents=True)

    assert manager.commit_issue_changes(10, "Add model", "feature/pay-issue-10") is True
    assert ("add", manager.path, ".featurecrew/") in git.calls
    assert ("commit", manager.path, "feat(#10): Add model\n\nCloses #10") in git.calls
    assert git.calls[-1] == ("push", manager.path, "feature/pay-issue-10")

    git.calls.clear()
    git.commit_result = False
    assert manager.commit_issue_changes(10, "Add model", "feature/pay-issue-10") is False
    assert not any(call[0] == "push" for call in git.calls)


def test_commit_architecture_changes_and_cleanup(tmp_path: Path) -> None:
    git = FakeGit()
    manager, _ = _manager(tmp_path, git)

    assert manager.commit_architecture_changes([12, 13]) is True
    commit = next(call for call in git.calls if call[0] == "commit")
    assert "Issues created: #12, #13" in str(commit[2])
    assert git.calls[-1] == ("push", manager.path, "feature/pay")

    manager.cleanup_issue_branch(12)
    assert git.calls[-1] == ("delete_branch", tmp_path / "shop", "feature/pay-issue-12")
