from __future__ import annotations

from collections.abc import Callable, Sequence
import logging
from pathlib import Path
import time

from featurecrew.config import TOOL_DIR_NAME
from featurecrew.git_ops import GitOps, MergeConflictError
from featurecrew.merge_conflicts import MergeConflictResolver
from featurecrew.models import WorktreeRecord
from featurecrew.observability import log_event
from featurecrew.state import StateStore


LOGGER = logging.getLogger("featurecrew.worktrees")

ARCHITECTURE_NOTES_FILENAME = "ARCHITECTURE_NOTES.md"
CHANGELOG_FILENAME = "CHANGELOG.md"


class WorktreeSyncError(RuntimeError):
    pass


class WorktreeLifecycleManager:
    """Prepares the single worktree shared by every task of one feature.

    Each setup step is safe to re-run. Issue work happens on per-issue branches
    inside this worktree, never in separate worktrees.
    """

    def __init__(
        self,
        *,
        git: GitOps,
        resolver: MergeConflictResolver,
        main_repo_path: Path,
        base_worktree_path: Path,
        project_name: str,
        feature_name: str,
        state: StateStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._git = git
        self._resolver = resolver
        self._main_repo_path = main_repo_path
        self._path = base_worktree_path / f"{project_name}-{feature_name}"
        self._feature_name = feature_name
        self._state = state
        self._clock = clock
        self._target_branch: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def feature_name(self) -> str:
        return self._feature_name

    @property
    def feature_branch(self) -> str:
        return f"feature/{self._feature_name}"

    @property
    def tool_dir(self) -> Path:
        return self._path / TOOL_DIR_NAME / self._feature_name

    @property
    def architecture_notes_path(self) -> Path:
        return self.tool_dir / ARCHITECTURE_NOTES_FILENAME

    @property
    def target_branch(self) -> str:
        """Branch issue work is based on and merged into; known once setup ran."""
        if self._target_branch is None:
            raise RuntimeError(f"Worktree for {self._feature_name} has not been set up")
        return self._target_branch

    def issue_branch(self, issue_number: int) -> str:
        return f"feature/{self._feature_name}-issue-{issue_number}"

    def worktree_exists(self) -> bool:
        return self._path.exists()

    def sync_base_branch(self, base_branch: str) -> None:
        log_event(LOGGER, "worktree_sync_base", branch=base_branch)
        self._git.checkout(self._main_repo_path, base_branch)
        self._git.pull(self._main_repo_path, base_branch)

    def ensure_feature_branch(self) -> str:
        branch = self.feature_branch
        if self._git.branch_exists(self._main_repo_path, branch):
            if self._git.is_branch_in_worktree(self._main_repo_path, branch):
                log_event(LOGGER, "feature_branch_in_worktree", branch=branch)
            else:
                self._git.checkout(self._main_repo_path, branch)
        else:
            self._git.create_branch(self._main_repo_path, branch)
            self._git.push(self._main_repo_path, branch)
            log_event(LOGGER, "feature_branch_created", branch=branch)
        return branch

    def sync_feature_branch(self, feature_branch: str, base_branch: str) -> None:
        """Merge ``base_branch`` into the feature branch, resolving conflicts or failing loudly."""
        location = self._path if self.worktree_exists() else self._main_repo_path
        log_event(
            LOGGER,
            "feature_branch_sync",
            branch=feature_branch,
            base_branch=base_branch,
            location=str(location),
        )
        try:
            self._git.merge(location, base_branch)
        except MergeConflictError as exc:
            if not self._resolver.handle_merge_conflict(location, base_branch, exc):
                raise WorktreeSyncError(
                    f"Failed to resolve merge conflicts when syncing {feature_branch} "
                    f"with {base_branch}; manual intervention required"
                ) from exc
        # The worktree cannot be bound to a branch the main clone still has checked out.
        self._git.checkout(self._main_repo_path, base_branch)

    def ensure_worktree(self, target_branch: str) -> None:
        if self.worktree_exists():
            log_event(LOGGER, "worktree_reused", path=self._path, branch=target_branch)
        else:
            self._git.add_worktree(self._main_repo_path, self._path, target_branch)
            log_event(LOGGER, "worktree_created", path=self._path, branch=target_branch)
        self._record_worktree(target_branch)

    def verify_worktree_branch(self, expected_branch: str) -> None:
        current = self._git.current_branch(self._path)
        if current != expected_branch:
            log_event(
                LOGGER, "worktree_branch_switch", from_branch=current, to_branch=expected_branch
            )
            self._git.safe_checkout(self._path, expected_branch)

    def setup_for_feature(self, base_branch: str, *, is_parent_feature: bool) -> str:
        self.sync_base_branch(base_branch)
        target_branch = base_branch
        if is_parent_feature:
            target_branch = self.ensure_feature_branch()
            self.sync_feature_branch(target_branch, base_branch)
        self.ensure_worktree(target_branch)
        self.verify_worktree_branch(target_branch)
        self._target_branch = target_branch
        return target_branch

    def setup_for_architecture(self, base_branch: str) -> str:
        self.sync_base_branch(base_branch)
        feature_branch = self.ensure_feature_branch()
        self.sync_feature_branch(feature_branch, base_branch)
        self.ensure_worktree(feature_branch)
        self.verify_worktree_branch(feature_branch)
        self.tool_dir.mkdir(parents=True, exist_ok=True)
        for name in (ARCHITECTURE_NOTES_FILENAME, CHANGELOG_FILENAME):
            (self.tool_dir / name).touch(exist_ok=True)
        self._target_branch = feature_branch
        log_event(LOGGER, "architecture_worktree_ready", branch=feature_branch)
        return feature_branch

    def setup_issue_branch(self, issue_number: int) -> str:
        branch = self.issue_branch(issue_number)
        if self._git.current_branch(self._path) == branch:
            return branch
        if self._git.ref_exists(self._path, branch) or self._git.ref_exists(
            self._path, f"origin/{branch}"
        ):
            self._git.safe_checkout(self._path, branch)
        else:
            self.verify_worktree_branch(self.target_branch)
            self._git.create_branch(self._path, branch)
        return branch

    def return_to_target_branch(self) -> str:
        """Switch back to the target branch and pull merged issue work into it."""
        target = self.target_branch
        self.verify_worktree_branch(target)
        self._git.pull(self._path, target)
        return target

    def commit_issue_changes(self, issue_number: int, title: str, branch: str) -> bool:
        """Stage, commit and push the issue's work; False when the agent changed nothing."""
        self._git.add_all(self._path)
        if self.tool_dir.parent.exists():
            try:
                self._git.add(self._path, f"{TOOL_DIR_NAME}/")
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "tool_dir_stage_failed",
                    issue_number=issue_number,
                    error_type=type(exc).__name__,
                )
        committed = self._git.commit(
            self._path, f"feat(#{issue_number}): {title}\n\nCloses #{issue_number}"
        )
        if not committed:
            log_event(LOGGER, "issue_nothing_to_commit", issue_number=issue_number)
            return False
        self._git.push(self._path, branch)
        return True

    def commit_architecture_changes(self, issue_numbers: Sequence[int]) -> bool:
        self._git.add(self._path, f"{TOOL_DIR_NAME}/")
        created = ", ".join(f"#{number}" for number in issue_numbers) or "none"
        committed = self._git.commit(
            self._path,
            f"arch: initialize {self._feature_name} architecture\n\nIssues created: {created}",
        )
        if committed:
            self._git.push(self._path, self.feature_branch)
        return committed

    def cleanup_issue_branch(self, issue_number: int) -> None:
        self._git.delete_branch(self._main_repo_path, self.issue_branch(issue_number))

    def _record_worktree(self, branch: str) -> None:
        if self._state is None:
            return
        name = self._path.name
        existing = self._state.get_worktree(name)
        self._state.create_worktree(
            WorktreeRecord(
                name=name,
                path=str(self._path),
                branch=branch,
                feature_name=self._feature_name,
                status="active",
                created_at=existing.created_at if existing is not None else self._clock(),
            )
        )
