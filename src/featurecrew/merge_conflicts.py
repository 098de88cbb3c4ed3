from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from pathlib import Path, PurePosixPath
from typing import Final, Literal

from featurecrew.agent_adapter import AgentAdapter, AgentError, AgentRequest
from featurecrew.claude_adapter import PROMPT_FILE_PREFIX, PROMPT_FILE_SUFFIX
from featurecrew.config import TOOL_DIR_NAME
from featurecrew.git_ops import GitOps, MergeConflictError
from featurecrew.observability import log_event
from featurecrew.prompts import build_conflict_resolution_prompt
from featurecrew.shell import CommandError


LOGGER = logging.getLogger("featurecrew.merge_conflicts")

ConflictStrategy = Literal["delete", "theirs", "union", "agent", "manual"]
# Called with (repo, path, branch); returns True once the file is conflict-free on disk.
AgentConflictResolver = Callable[[Path, str, str], bool]

ROLE_FILE_PREFIXES: Final[tuple[str, ...]] = ("solver-", "reviewer-")
APPEND_ONLY_FILES: Final[frozenset[str]] = frozenset({"ARCHITECTURE_NOTES.md", "CHANGELOG.md"})
SOURCE_SUFFIXES: Final[frozenset[str]] = frozenset(
    {
        ".py",
        ".pyi",
        ".ts",
        ".tsx",
        ".js",
        ".jsx",
        ".mjs",
        ".cjs",
        ".json",
        ".toml",
        ".yaml",
        ".yml",
        ".cfg",
        ".ini",
        ".go",
        ".rs",
        ".java",
        ".kt",
        ".rb",
        ".css",
        ".scss",
        ".html",
        ".sh",
        ".sql",
    }
)
_CONFLICT_MARKERS: Final[tuple[str, ...]] = ("<<<<<<< ", "=======\n", ">>>>>>> ")


@dataclass(frozen=True)
class ConflictPlan:
    path: str
    strategy: ConflictStrategy


def classify_conflict(path: str) -> ConflictStrategy:
    """Map a conflicted repository-relative path to its resolution strategy."""
    pure = PurePosixPath(path)
    name = pure.name
    in_tool_dir = TOOL_DIR_NAME in pure.parts[:-1]

    if len(pure.parts) == 1 and name.startswith(PROMPT_FILE_PREFIX) and name.endswith(
        PROMPT_FILE_SUFFIX
    ):
        return "delete"
    if in_tool_dir and name.startswith(ROLE_FILE_PREFIXES):
        return "theirs"
    if in_tool_dir and name in APPEND_ONLY_FILES:
        return "union"
    if pure.suffix.lower() in SOURCE_SUFFIXES:
        return "agent"
    return "manual"


class MergeConflictResolver:
    def __init__(self, git: GitOps, *, agent_resolver: AgentConflictResolver | None = None) -> None:
        self._git = git
        self._agent_resolver = agent_resolver

    def plan(self, repo: Path) -> tuple[ConflictPlan, ...]:
        return tuple(
            ConflictPlan(path=path, strategy=classify_conflict(path))
            for path in self._git.conflicted_files(repo)
        )

    def resolve_merge_conflicts(self, repo: Path, branch: str) -> bool:
        """Resolve every conflicted file and conclude the merge, or report False.

        The merge is only committed when all files were resolved; the caller owns
        aborting the merge on False.
        """
        plans = self.plan(repo)
        log_event(
            LOGGER,
            "merge_conflict_plan",
            repo=str(repo),
            branch=branch,
            files=tuple(f"{p.path}:{p.strategy}" for p in plans),
        )
        unresolved: list[str] = []
        for plan in plans:
            try:
                resolved = self._apply(repo, branch, plan)
            except CommandError as exc:
                log_event(
                    LOGGER,
                    "merge_conflict_strategy_failed",
                    path=plan.path,
                    strategy=plan.strategy,
                    error_type=type(exc).__name__,
                )
                resolved = False
            if not resolved:
                unresolved.append(plan.path)

        if unresolved:
            log_event(
                LOGGER,
                "merge_conflict_unresolved",
                repo=str(repo),
                branch=branch,
                files=tuple(unresolved),
            )
            return False

        if plans:
            self._git.commit(repo, f"Merge {branch}: resolve conflicts automatically")
        log_event(LOGGER, "merge_conflict_resolved", repo=str(repo), file_count=len(plans))
        return True

    def handle_merge_conflict(self, repo: Path, branch: str, error: MergeConflictError) -> bool:
        """Try automatic resolution; on failure abort the merge so the tree is clean."""
        log_event(LOGGER, "merge_conflict_detected", repo=str(repo), files=error.files)
        if self.resolve_merge_conflicts(repo, branch):
            return True
        try:
            self._git.abort_merge(repo)
        except CommandError as exc:
            log_event(
                LOGGER,
                "merge_abort_failed",
                repo=str(repo),
                error_type=type(exc).__name__,
            )
        return False

    def _apply(self, repo: Path, branch: str, plan: ConflictPlan) -> bool:
        if plan.strategy == "delete":
            self._git.remove(repo, plan.path)
            return True
        if plan.strategy == "theirs":
            self._git.checkout_side(repo, plan.path, "theirs")
            self._git.add(repo, plan.path)
            return True
        if plan.strategy == "union":
            self._merge_both_sides(repo, plan.path)
            return True
        if plan.strategy == "agent" and self._agent_resolver is not None:
            if not self._agent_resolver(repo, plan.path, branch):
                return False
            if _has_conflict_markers(repo / plan.path):
                log_event(LOGGER, "merge_conflict_markers_remain", path=plan.path)
                return False
            self._git.add(repo, plan.path)
            return True
        log_event(LOGGER, "merge_conflict_needs_manual", path=plan.path, strategy=plan.strategy)
        return False

    def _merge_both_sides(self, repo: Path, path: str) -> None:
        try:
            merged = self._git.merge_union(repo, path)
        except CommandError:
            # One side added the file; keep the incoming copy.
            self._git.checkout_side(repo, path, "theirs")
        else:
            (repo / path).write_text(merged, encoding="utf-8")
        self._git.add(repo, path)


def _has_conflict_markers(path: Path) -> bool:
    if not path.exists():
        return False
    text = path.read_text(encoding="utf-8", errors="replace")
    return any(marker in text for marker in _CONFLICT_MARKERS)


def build_agent_conflict_resolver(
    agent: AgentAdapter, *, feature_name: str | None = None
) -> AgentConflictResolver:
    """Resolve a conflicted source file by asking the agent to edit it in place."""

    def resolve(repo: Path, path: str, branch: str) -> bool:
        prompt = build_conflict_resolution_prompt(path=path, branch=branch, repo=repo)
        try:
            agent.invoke(
                AgentRequest(
                    agent_type="solver", prompt=prompt, cwd=repo, feature_name=feature_name
                )
            )
        except AgentError as exc:
            log_event(
                LOGGER,
                "merge_conflict_agent_failed",
                path=path,
                agent_id=exc.agent_id,
                error_type=type(exc).__name__,
            )
            return False
        return True

    return resolve
