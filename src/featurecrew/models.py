from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


TaskStatus = Literal["pending", "solving", "reviewing", "approved", "rejected", "completed"]
IssueStatus = Literal[
    "pending", "solving", "reviewing", "approved", "rejected", "completed", "failed"
]
ReviewResult = Literal["APPROVE", "REJECT"]
AgentType = Literal["arch", "solver", "reviewer"]
AgentRunStatus = Literal["idle", "running", "completed", "failed"]
WorktreeStatus = Literal["active", "stale", "archived"]
FeatureStatus = Literal["planning", "in_progress", "completed", "failed"]
ChangeType = Literal["agent", "feature", "issue", "worktree", "config", "session"]
ChangeAction = Literal["create", "update", "delete"]
PullRequestReviewState = Literal["APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED"]


@dataclass(frozen=True)
class FeatureSpec:
    name: str
    description: str
    base_branch: str = "main"
    issues: tuple[int, ...] = ()
    is_parent_feature: bool = False
    architecture_mode: bool = False


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    state: str


@dataclass(frozen=True)
class PullRequestReview:
    author: str
    state: str
    submitted_at: str
    body: str


@dataclass(frozen=True)
class TaskReview:
    reviewer_id: str
    result: ReviewResult
    comments: str
    timestamp: float
    pr_number: int | None = None


@dataclass
class FeatureTask:
    """Mutable per-issue record owned by the scheduler; mutated only under its lock."""

    issue_number: int
    title: str
    description: str
    dependencies: tuple[int, ...]
    worktree_path: Path
    required_reviewers: tuple[str, ...] = ()
    status: TaskStatus = "pending"
    attempts: int = 0
    max_attempts: int = 3
    review_history: list[TaskReview] = field(default_factory=list)
    branch: str | None = None
    pr_number: int | None = None


@dataclass(frozen=True)
class AgentRecord:
    id: str
    agent_type: AgentType
    status: AgentRunStatus = "idle"
    feature_name: str | None = None
    issue_number: int | None = None
    start_time: float | None = None
    end_time: float | None = None
    logs: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class FeatureRecord:
    name: str
    description: str
    base_branch: str
    status: FeatureStatus
    is_parent_feature: bool = False
    architecture_mode: bool = False
    issues: tuple[int, ...] = ()
    worktree_path: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class IssueRecord:
    number: int
    feature_name: str
    title: str
    status: IssueStatus = "pending"
    attempts: int = 0
    max_attempts: int = 3
    dependencies: tuple[int, ...] = ()
    branch: str | None = None
    pr_number: int | None = None
    updated_at: float = 0.0


@dataclass(frozen=True)
class WorktreeRecord:
    name: str
    path: str
    branch: str
    feature_name: str
    status: WorktreeStatus = "active"
    created_at: float = 0.0


@dataclass(frozen=True)
class SessionRecord:
    id: str
    token: str
    created_at: float
    last_access: float


@dataclass(frozen=True)
class StateChange:
    type: ChangeType
    action: ChangeAction
    id: str
    data: object | None
