from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import tempfile
from typing import Literal

from featurecrew.observability import log_event
from featurecrew.shell import CommandError, run


LOGGER = logging.getLogger("featurecrew.git_ops")
ConflictSide = Literal["ours", "theirs"]

_CONFLICT_SIGNALS = ("CONFLICT", "Automatic merge failed")
_PARTIAL_MERGE_SIGNALS = ("unmerged files", "Merging is not possible")
_OVERWRITE_SIGNAL = "would be overwritten by checkout"


class MergeConflictError(CommandError):
    def __init__(self, message: str, *, files: tuple[str, ...], source: CommandError) -> None:
        super().__init__(
            message,
            argv=source.argv,
            exit_code=source.exit_code,
            stdout=source.stdout,
            stderr=source.stderr,
        )
        self.files = files


class PartialMergeError(CommandError):
    pass


@dataclass(frozen=True)
class WorktreeEntry:
    path: Path
    branch: str | None


class GitOps:
    """Thin wrappers over the git CLI; every call names its repository path explicitly."""

    def checkout(self, repo: Path, branch: str) -> None:
        log_event(LOGGER, "git_checkout", repo=str(repo), branch=branch)
        run(["git", "-C", str(repo), "checkout", branch])

    def create_branch(self, repo: Path, branch: str) -> None:
        log_event(LOGGER, "git_branch_created", repo=str(repo), branch=branch)
        run(["git", "-C", str(repo), "checkout", "-b", branch])

    def pull(self, repo: Path, branch: str) -> None:
        run(["git", "-C", str(repo), "pull", "origin", branch])

    def push(self, repo: Path, branch: str) -> None:
        log_event(LOGGER, "git_push", repo=str(repo), branch=branch)
        run(["git", "-C", str(repo), "push", "-u", "origin", branch])

    def branch_exists(self, repo: Path, branch: str) -> bool:
        out = run(["git", "-C", str(repo), "branch", "--list", branch])
        return bool(out.strip())

    def ref_exists(self, repo: Path, ref: str) -> bool:
        try:
            run(["git", "-C", str(repo), "rev-parse", "--verify", "--quiet", ref])
        except CommandError:
            return False
        return True

    def current_branch(self, repo: Path) -> str:
        return run(["git", "-C", str(repo), "branch", "--show-current"]).strip()

    def add_worktree(self, repo: Path, path: Path, branch: str) -> None:
        log_event(LOGGER, "git_worktree_added", repo=str(repo), path=str(path), branch=branch)
        run(["git", "-C", str(repo), "worktree", "add", str(path), branch])

    def list_worktrees(self, repo: Path) -> tuple[WorktreeEntry, ...]:
        out = run(["git", "-C", str(repo), "worktree", "list", "--porcelain"])
        entries: list[WorktreeEntry] = []
        path: Path | None = None
        branch: str | None = None
        for line in [*out.splitlines(), ""]:
            if line.startswith("worktree "):
                path = Path(line[len("worktree ") :])
            elif line.startswith("branch refs/heads/"):
                branch = line[len("branch refs/heads/") :]
            elif not line.strip() and path is not None:
                entries.append(WorktreeEntry(path=path, branch=branch))
                path, branch = None, None
        return tuple(entries)

    def is_branch_in_worktree(self, repo: Path, branch: str) -> bool:
        return any(entry.branch == branch for entry in self.list_worktrees(repo))

    def merge(self, repo: Path, ref: str) -> None:
        log_event(LOGGER, "git_merge", repo=str(repo), ref=ref)
        try:
            run(["git", "-C", str(repo), "merge", ref, "--no-edit"])
        except CommandError as exc:
            if any(signal in exc.output for signal in _CONFLICT_SIGNALS):
                files = self.conflicted_files(repo)
                log_event(LOGGER, "git_merge_conflict", repo=str(repo), ref=ref, files=files)
                raise MergeConflictError(
                    f"MERGE_CONFLICT merging {ref}: {', '.join(files) or 'unknown files'}",
                    files=files,
                    source=exc,
                ) from exc
            if any(signal in exc.output for signal in _PARTIAL_MERGE_SIGNALS):
                raise PartialMergeError(
                    f"Repository {repo} has an unfinished merge",
                    argv=exc.argv,
                    exit_code=exc.exit_code,
                    stdout=exc.stdout,
                    stderr=exc.stderr,
                ) from exc
            raise

    def conflicted_files(self, repo: Path) -> tuple[str, ...]:
        out = run(["git", "-C", str(repo), "diff", "--name-only", "--diff-filter=U"])
        return tuple(line.strip() for line in out.splitlines() if line.strip())

    def checkout_side(self, repo: Path, path: str, side: ConflictSide) -> None:
        run(["git", "-C", str(repo), "checkout", f"--{side}", "--", path])

    def show_stage(self, repo: Path, stage: int, path: str) -> str:
        return run(["git", "-C", str(repo), "show", f":{stage}:{path}"])

    def merge_union(self, repo: Path, path: str) -> str:
        """Three-way merge of a conflicted file that keeps the lines added on both sides.

        Raises ``CommandError`` when either side has no copy of ``path``.
        """
        ours = self.show_stage(repo, 2, path)
        theirs = self.show_stage(repo, 3, path)
        try:
            base = self.show_stage(repo, 1, path)
        except CommandError:
            base = ""
        with tempfile.TemporaryDirectory(prefix="featurecrew_union_") as tmp:
            sides: list[str] = []
            for name, text in (("ours", ours), ("base", base), ("theirs", theirs)):
                side = Path(tmp) / name
                side.write_text(text, encoding="utf-8")
                sides.append(str(side))
            return run(["git", "merge-file", "-p", "--union", *sides])

    def add(self, repo: Path, *paths: str) -> None:
        run(["git", "-C", str(repo), "add", "--", *paths])

    def add_all(self, repo: Path) -> None:
        run(["git", "-C", str(repo), "add", "-A"])

    def remove(self, repo: Path, path: str) -> None:
        run(["git", "-C", str(repo), "rm", "-f", "--quiet", "--", path])

    def abort_merge(self, repo: Path) -> None:
        log_event(LOGGER, "git_merge_aborted", repo=str(repo))
        run(["git", "-C", str(repo), "merge", "--abort"])

    def commit(self, repo: Path, message: str) -> bool:
        """Commit staged changes; False when there was nothing to commit."""
        try:
            run(["git", "-C", str(repo), "commit", "-m", message])
        except CommandError as exc:
            if "nothing to commit" in exc.output or "no changes added" in exc.output:
                log_event(LOGGER, "git_nothing_to_commit", repo=str(repo))
                return False
            raise
        log_event(LOGGER, "git_commit", repo=str(repo), subject=message.splitlines()[0])
        return True

    def safe_checkout(self, repo: Path, branch: str) -> None:
        """Switch branches, stashing local changes the checkout would clobber."""
        try:
            self.checkout(repo, branch)
            return
        except CommandError as exc:
            if _OVERWRITE_SIGNAL not in exc.output:
                raise

        log_event(LOGGER, "git_checkout_stashing", repo=str(repo), branch=branch)
        run(
            [
                "git",
                "-C",
                str(repo),
                "stash",
                "push",
                "--include-untracked",
                "-m",
                f"featurecrew: auto-stash before switching to {branch}",
            ]
        )
        self.checkout(repo, branch)
        try:
            run(["git", "-C", str(repo), "stash", "pop"])
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_stash_restore_failed",
                repo=str(repo),
                branch=branch,
                error_type=type(exc).__name__,
            )

    def delete_branch(self, repo: Path, branch: str) -> None:
        """Delete a branch locally and on origin; failures are logged and ignored."""
        for argv in (
            ["git", "-C", str(repo), "branch", "-D", branch],
            ["git", "-C", str(repo), "push", "origin", "--delete", branch],
        ):
            try:
                run(argv)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "git_branch_delete_failed",
                    repo=str(repo),
                    branch=branch,
                    command=argv[3],
                    error_type=type(exc).__name__,
                )
