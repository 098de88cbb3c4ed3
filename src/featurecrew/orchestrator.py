from __future__ import annotations

from collections.abc import Callable, Collection, Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import graphlib
import logging
import threading
import time
from typing import Literal

from featurecrew.agent_adapter import AgentAdapter, AgentRequest
from featurecrew.config import AppConfig
from featurecrew.feedback import AmbiguousVerdict, parse_review_verdict, synthesize_feedback
from featurecrew.github_gateway import (
    GitHubGateway,
    parse_created_issues,
    parse_dependencies,
    parse_required_reviewers,
)
from featurecrew.models import (
    FeatureRecord,
    FeatureSpec,
    FeatureTask,
    IssueRecord,
    IssueStatus,
    TaskReview,
)
from featurecrew.observability import log_event, logging_feature_context
from featurecrew.process_registry import ProcessRegistry
from featurecrew.prompts import (
    build_architecture_prompt,
    build_reviewer_prompt,
    build_shared_reviewer_prompt,
    build_solver_prompt,
    load_profile_content,
    readable_feature_title,
    render_feature_pr_body,
    render_issue_pr_body,
    render_issue_pr_title,
)
from featurecrew.shell import CommandError, owned_by
from featurecrew.state import StateStore
from featurecrew.worktrees import WorktreeLifecycleManager


LOGGER = logging.getLogger("featurecrew.orchestrator")

ReviewRoundState = Literal["awaiting_reviews", "approved", "rejected", "cancelled"]


class FeatureSpecError(ValueError):
    pass


class DependencyCycleError(FeatureSpecError):
    def __init__(self, cycle: Sequence[int]) -> None:
        super().__init__(
            "Dependency cycle between issues: " + " -> ".join(f"#{n}" for n in cycle)
        )
        self.cycle = tuple(cycle)


class UnknownDependencyError(FeatureSpecError):
    def __init__(self, issue_number: int, missing: Sequence[int]) -> None:
        super().__init__(
            f"Issue #{issue_number} depends on issues outside this run: "
            + ", ".join(f"#{n}" for n in missing)
        )
        self.issue_number = issue_number
        self.missing = tuple(missing)


class TaskFailedError(RuntimeError):
    def __init__(self, message: str, *, issue_number: int) -> None:
        super().__init__(message)
        self.issue_number = issue_number


class MissingPullRequestError(TaskFailedError):
    pass


class RetryExhaustedError(TaskFailedError):
    pass


class SchedulerStalledError(RuntimeError):
    pass


class FeatureCancelledError(RuntimeError):
    pass


@dataclass(frozen=True)
class RunOutcome:
    feature_name: str
    success: bool
    completed_issues: tuple[int, ...] = ()
    failed_issue: int | None = None
    error: str | None = None


def validate_task_graph(tasks: Mapping[int, FeatureTask]) -> tuple[int, ...]:
    """Reject empty, dangling or cyclic task sets; return a dependency-respecting order."""
    if not tasks:
        raise FeatureSpecError(
            "No issues to process. Provide issue numbers or use architecture mode."
        )
    for number, task in sorted(tasks.items()):
        missing = [dep for dep in task.dependencies if dep not in tasks]
        if missing:
            raise UnknownDependencyError(number, missing)
    sorter = graphlib.TopologicalSorter(
        {number: task.dependencies for number, task in tasks.items()}
    )
    try:
        return tuple(sorter.static_order())
    except graphlib.CycleError as exc:
        raise DependencyCycleError(exc.args[1]) from exc


def ready_tasks(tasks: Mapping[int, FeatureTask], *, active: Collection[int]) -> list[FeatureTask]:
    """Pending, inactive tasks whose every dependency is completed, lowest issue first."""
    ready: list[FeatureTask] = []
    for number in sorted(tasks):
        task = tasks[number]
        if task.status != "pending" or number in active:
            continue
        if all(dep in tasks and tasks[dep].status == "completed" for dep in task.dependencies):
            ready.append(task)
    return ready


class ReviewRound:
    """One verdict per required reviewer, collected in order before any decision.

    While verdicts are outstanding the round is ``awaiting_reviews`` with
    ``awaiting`` reviewers left; it is approved only if every verdict approves.
    """

    def __init__(self, reviewers: Sequence[str]) -> None:
        if not reviewers:
            raise ValueError("A review round needs at least one reviewer")
        self._reviewers = tuple(reviewers)
        self._reviews: list[TaskReview] = []
        self._cancelled = False

    @property
    def reviewers(self) -> tuple[str, ...]:
        return self._reviewers

    @property
    def reviews(self) -> tuple[TaskReview, ...]:
        return tuple(self._reviews)

    @property
    def awaiting(self) -> int:
        return len(self._reviewers) - len(self._reviews)

    @property
    def state(self) -> ReviewRoundState:
        if self._cancelled:
            return "cancelled"
        if self.awaiting:
            return "awaiting_reviews"
        if all(review.result == "APPROVE" for review in self._reviews):
            return "approved"
        return "rejected"

    @property
    def approved(self) -> bool:
        return self.state == "approved"

    def next_reviewer(self) -> str | None:
        if self.state != "awaiting_reviews":
            return None
        return self._reviewers[len(self._reviews)]

    def record(self, review: TaskReview) -> None:
        if self.state != "awaiting_reviews":
            raise RuntimeError(f"Cannot record a review in a {self.state} round")
        self._reviews.append(review)

    def cancel(self) -> None:
        if self.state == "awaiting_reviews":
            self._cancelled = True


class FeatureOrchestrator:
    """Runs one feature's issues through solve, review and merge.

    A polling loop dispatches ready tasks to a thread pool bounded by
    ``max_concurrent_tasks``. Task fields and the active set are only touched
    under ``_lock``; phases that use the shared worktree hold ``_worktree_lock``.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        state: StateStore,
        github: GitHubGateway,
        worktrees: WorktreeLifecycleManager,
        agent: AgentAdapter,
        registry: ProcessRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._state = state
        self._github = github
        self._worktrees = worktrees
        self._agent = agent
        self._registry = registry
        self._clock = clock
        self._feature_name = worktrees.feature_name
        self._tasks: dict[int, FeatureTask] = {}
        self._active: dict[int, Future[None]] = {}
        self._rounds: dict[int, ReviewRound] = {}
        self._lock = threading.RLock()
        self._worktree_lock = threading.Lock()
        self._stop = threading.Event()
        self._halted = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def active_issue_numbers(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._active))

    def task_statuses(self) -> dict[int, str]:
        with self._lock:
            return {number: task.status for number, task in self._tasks.items()}

    def cancel(self) -> None:
        """Stop dispatching and terminate every subprocess this run started."""
        self._stop.set()
        self._halted.set()
        with self._lock:
            for review_round in self._rounds.values():
                review_round.cancel()
        terminated = self._registry.terminate_all()
        log_event(LOGGER, "feature_run_cancel_requested", terminated_processes=terminated)

    def execute(self, spec: FeatureSpec) -> RunOutcome:
        with logging_feature_context(spec.name), owned_by(self._registry):
            return self._execute(spec)

    def _execute(self, spec: FeatureSpec) -> RunOutcome:
        if spec.name != self._feature_name:
            raise FeatureSpecError(
                f"Worktree manager is set up for {self._feature_name}, not {spec.name}"
            )
        if not spec.architecture_mode and not spec.issues:
            raise FeatureSpecError(
                "No issues to process. Provide issue numbers or use architecture mode."
            )
        log_event(
            LOGGER,
            "feature_run_started",
            base_branch=spec.base_branch,
            issues=spec.issues,
            parent=spec.is_parent_feature,
            architecture=spec.architecture_mode,
        )
        now = self._clock()
        self._state.create_feature(
            FeatureRecord(
                name=spec.name,
                description=spec.description,
                base_branch=spec.base_branch,
                status="planning",
                is_parent_feature=spec.is_parent_feature,
                architecture_mode=spec.architecture_mode,
                issues=spec.issues,
                worktree_path=str(self._worktrees.path),
                created_at=now,
                updated_at=now,
            )
        )

        failed_issue: int | None = None
        try:
            if spec.architecture_mode:
                issue_numbers = self._architect(spec)
            else:
                issue_numbers = spec.issues
            tasks = self._load_tasks(issue_numbers)
            validate_task_graph(tasks)
            if not spec.architecture_mode:
                self._worktrees.setup_for_feature(
                    spec.base_branch, is_parent_feature=spec.is_parent_feature
                )
            with self._lock:
                self._tasks = tasks
            for task in tasks.values():
                self._publish_issue(task)
            self._update_feature(status="in_progress", issues=tuple(sorted(tasks)))

            self._run_tasks()

            if spec.is_parent_feature and not spec.architecture_mode:
                self._create_feature_pr(spec)
        except FeatureSpecError as exc:
            self._update_feature(status="failed", error=str(exc))
            raise
        except FeatureCancelledError:
            return self._finish(success=False, error="cancelled")
        except TaskFailedError as exc:
            failed_issue = exc.issue_number
            return self._finish(success=False, failed_issue=failed_issue, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            if self._stop.is_set():
                return self._finish(success=False, error="cancelled")
            failed_issue = getattr(exc, "issue_number", None)
            return self._finish(
                success=False,
                failed_issue=failed_issue,
                error=f"{type(exc).__name__}: {exc}",
            )
        return self._finish(success=True)

    def _finish(
        self, *, success: bool, failed_issue: int | None = None, error: str | None = None
    ) -> RunOutcome:
        with self._lock:
            completed = tuple(
                sorted(n for n, task in self._tasks.items() if task.status == "completed")
            )
        self._update_feature(status="completed" if success else "failed", error=error)
        outcome = RunOutcome(
            feature_name=self._feature_name,
            success=success,
            completed_issues=completed,
            failed_issue=failed_issue,
            error=error,
        )
        log_event(
            LOGGER,
            "feature_run_finished",
            success=success,
            completed_issues=completed,
            failed_issue=failed_issue,
            error=error,
        )
        return outcome

    def _load_tasks(self, issue_numbers: Iterable[int]) -> dict[int, FeatureTask]:
        runtime = self._config.runtime
        tasks: dict[int, FeatureTask] = {}
        for number in dict.fromkeys(issue_numbers):
            issue = self._github.get_issue(number)
            existing_pr = self._github.find_open_pr_for_issue(number)
            tasks[number] = FeatureTask(
                issue_number=number,
                title=issue.title,
                description=issue.body,
                dependencies=parse_dependencies(issue.body),
                worktree_path=self._worktrees.path,
                required_reviewers=parse_required_reviewers(issue.body)
                or runtime.default_reviewers,
                max_attempts=runtime.max_attempts,
                pr_number=existing_pr,
            )
            log_event(
                LOGGER,
                "task_loaded",
                issue_number=number,
                dependencies=tasks[number].dependencies,
                reviewers=tasks[number].required_reviewers,
                existing_pr=existing_pr,
            )
        return tasks

    def _run_tasks(self) -> None:
        runtime = self._config.runtime
        with ThreadPoolExecutor(
            max_workers=runtime.max_concurrent_tasks, thread_name_prefix="featurecrew-task"
        ) as pool:
            try:
                self._dispatch_loop(pool)
            finally:
                # In-flight tasks stop at their next phase boundary; the pool waits for them.
                self._halted.set()

    def _dispatch_loop(self, pool: ThreadPoolExecutor) -> None:
        runtime = self._config.runtime
        while True:
            self._reap_finished()
            if self._stop.is_set():
                raise FeatureCancelledError(f"Feature {self._feature_name} was cancelled")
            with self._lock:
                if all(task.status == "completed" for task in self._tasks.values()):
                    return
                for task in ready_tasks(self._tasks, active=self._active):
                    if len(self._active) >= runtime.max_concurrent_tasks:
                        break
                    self._active[task.issue_number] = pool.submit(
                        self._run_task, task.issue_number
                    )
                    log_event(
                        LOGGER,
                        "task_dispatched",
                        issue_number=task.issue_number,
                        attempt=task.attempts + 1,
                        active_count=len(self._active),
                    )
                if not self._active:
                    waiting = sorted(
                        n for n, task in self._tasks.items() if task.status != "completed"
                    )
                    raise SchedulerStalledError(
                        "No task is running or ready; waiting on "
                        + ", ".join(f"#{n}" for n in waiting)
                    )
            self._stop.wait(runtime.poll_interval_seconds)

    def _reap_finished(self) -> None:
        with self._lock:
            finished = [number for number, fut in self._active.items() if fut.done()]
            futures = [(number, self._active.pop(number)) for number in finished]
        for number, fut in futures:
            exc = fut.exception()
            if exc is None:
                continue
            if isinstance(exc, FeatureCancelledError):
                raise exc
            log_event(
                LOGGER,
                "task_failed",
                issue_number=number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if isinstance(exc, TaskFailedError):
                raise exc
            raise TaskFailedError(
                f"Task #{number} failed: {type(exc).__name__}: {exc}", issue_number=number
            ) from exc

    def _run_task(self, issue_number: int) -> None:
        with logging_feature_context(self._feature_name):
            task = self._tasks[issue_number]
            try:
                self._attempt(task)
            except FeatureCancelledError as exc:
                if self._stop.is_set():
                    self._interrupt(task, exc)
                raise
            except Exception as exc:
                if self._stop.is_set():
                    # Cancellation killed the subprocess this task was waiting on.
                    self._interrupt(task, exc)
                    raise FeatureCancelledError(
                        f"Issue #{issue_number} was interrupted by cancellation"
                    ) from exc
                with self._lock:
                    if task.status != "completed":
                        task.status = "rejected"
                self._publish_issue(task, status="failed")
                raise

    def _interrupt(self, task: FeatureTask, exc: Exception) -> None:
        with self._lock:
            if task.status != "completed":
                task.status = "pending"
        self._publish_issue(task)
        log_event(
            LOGGER,
            "task_interrupted",
            issue_number=task.issue_number,
            attempt=task.attempts,
            error_type=type(exc).__name__,
        )

    def _attempt(self, task: FeatureTask) -> None:
        with self._worktree_lock:
            self._check_halted()
            needs_solving = self._needs_solving(task)
            with self._lock:
                task.attempts += 1
                task.status = "solving" if needs_solving else "reviewing"
            self._publish_issue(task)
            if needs_solving:
                self._solve(task)
            else:
                log_event(
                    LOGGER,
                    "task_solve_skipped",
                    issue_number=task.issue_number,
                    pr_number=task.pr_number,
                    attempt=task.attempts,
                )

        with self._worktree_lock:
            self._check_halted()
            approved = self._review(task)

        if approved:
            self._complete(task)
        else:
            self._reject(task)

    def _check_halted(self) -> None:
        if self._halted.is_set():
            raise FeatureCancelledError(f"Feature {self._feature_name} is stopping")

    def _needs_solving(self, task: FeatureTask) -> bool:
        if task.pr_number is None or task.review_history:
            return True
        try:
            return self._github.has_pending_change_requests(task.pr_number)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "pr_review_status_failed",
                issue_number=task.issue_number,
                pr_number=task.pr_number,
                error_type=type(exc).__name__,
            )
            return True

    def _solve(self, task: FeatureTask) -> None:
        branch = self._worktrees.setup_issue_branch(task.issue_number)
        feedback = (
            synthesize_feedback(task.review_history, task.attempts) if task.attempts > 1 else None
        )
        prompt = build_solver_prompt(
            task=task,
            feature_name=self._feature_name,
            worktree_path=self._worktrees.path,
            branch=branch,
            architecture_notes_path=self._worktrees.architecture_notes_path,
            previous_feedback=feedback,
        )
        self._agent.invoke(
            AgentRequest(
                agent_type="solver",
                prompt=prompt,
                cwd=self._worktrees.path,
                feature_name=self._feature_name,
                issue_number=task.issue_number,
            )
        )
        self._worktrees.commit_issue_changes(task.issue_number, task.title, branch)

        title = render_issue_pr_title(task)
        body = render_issue_pr_body(task, feature_name=self._feature_name)
        pr_number = task.pr_number
        if pr_number is not None:
            try:
                self._github.update_pull_request(pr_number, title=title, body=body)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "pr_update_failed",
                    issue_number=task.issue_number,
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                )
        else:
            try:
                pr_number = self._github.create_pull_request(
                    title=title, body=body, base=self._worktrees.target_branch, head=branch
                )
            except CommandError as exc:
                log_event(
                    LOGGER,
                    "pr_create_failed",
                    issue_number=task.issue_number,
                    error_type=type(exc).__name__,
                )
            if pr_number is None:
                pr_number = self._github.find_open_pr_for_issue(task.issue_number)
        if pr_number is None:
            raise MissingPullRequestError(
                f"No pull request found for issue #{task.issue_number} after solving",
                issue_number=task.issue_number,
            )
        with self._lock:
            task.pr_number = pr_number
            task.branch = branch
        self._publish_issue(task)

    def _review(self, task: FeatureTask) -> bool:
        if task.pr_number is None:
            raise MissingPullRequestError(
                f"No pull request to review for issue #{task.issue_number}",
                issue_number=task.issue_number,
            )
        with self._lock:
            task.status = "reviewing"
        self._publish_issue(task)
        self._worktrees.verify_worktree_branch(self._worktrees.issue_branch(task.issue_number))

        shared_prompt = build_shared_reviewer_prompt(
            task=task, feature_name=self._feature_name, worktree_path=self._worktrees.path
        )
        shared_path = (
            self._worktrees.tool_dir
            / f"reviewer-shared-issue-{task.issue_number}-attempt-{task.attempts}.md"
        )
        shared_path.parent.mkdir(parents=True, exist_ok=True)
        shared_path.write_text(shared_prompt, encoding="utf-8")

        review_round = ReviewRound(task.required_reviewers)
        with self._lock:
            self._rounds[task.issue_number] = review_round
        try:
            while (profile := review_round.next_reviewer()) is not None:
                reviewer_id = f"reviewer-{len(review_round.reviews)}"
                try:
                    review = self._review_once(task, profile, reviewer_id, shared_prompt)
                except Exception as exc:
                    if review_round.state == "cancelled":
                        raise FeatureCancelledError(
                            f"Review of issue #{task.issue_number} was cancelled"
                        ) from exc
                    raise
                with self._lock:
                    if review_round.state == "cancelled":
                        raise FeatureCancelledError(
                            f"Review of issue #{task.issue_number} was cancelled"
                        )
                    review_round.record(review)
                self._submit_review(task, review, profile)
            if review_round.state == "cancelled":
                raise FeatureCancelledError(f"Review of issue #{task.issue_number} was cancelled")
        finally:
            with self._lock:
                self._rounds.pop(task.issue_number, None)

        with self._lock:
            task.review_history.extend(review_round.reviews)
        approvals = sum(1 for review in review_round.reviews if review.result == "APPROVE")
        log_event(
            LOGGER,
            "review_round_finished",
            issue_number=task.issue_number,
            pr_number=task.pr_number,
            attempt=task.attempts,
            approvals=approvals,
            required=len(review_round.reviewers),
            state=review_round.state,
        )
        return review_round.approved

    def _review_once(
        self, task: FeatureTask, profile: str, reviewer_id: str, shared_prompt: str
    ) -> TaskReview:
        prompt = build_reviewer_prompt(
            shared_prompt=shared_prompt,
            reviewer_id=reviewer_id,
            profile=profile,
            profile_content=load_profile_content(
                profile, profiles_dir=self._config.agent.profiles_dir
            ),
        )
        result = self._agent.invoke(
            AgentRequest(
                agent_type="reviewer",
                prompt=prompt,
                cwd=self._worktrees.path,
                feature_name=self._feature_name,
                issue_number=task.issue_number,
            )
        )
        verdict = parse_review_verdict(result.output)
        if isinstance(verdict, AmbiguousVerdict):
            log_event(
                LOGGER,
                "review_verdict_ambiguous",
                issue_number=task.issue_number,
                reviewer=reviewer_id,
                reason=verdict.reason,
            )
        return TaskReview(
            reviewer_id=reviewer_id,
            result=verdict.result,
            comments=result.output,
            timestamp=self._clock(),
            pr_number=task.pr_number,
        )

    def _submit_review(self, task: FeatureTask, review: TaskReview, profile: str) -> None:
        if task.pr_number is None:
            return
        try:
            self._github.submit_review(
                task.pr_number,
                result=review.result,
                body=review.comments,
                reviewer_id=review.reviewer_id,
                profile=profile,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "review_submit_failed",
                issue_number=task.issue_number,
                pr_number=task.pr_number,
                reviewer=review.reviewer_id,
                error_type=type(exc).__name__,
            )

    def _complete(self, task: FeatureTask) -> None:
        with self._lock:
            task.status = "approved"
            pr_number = task.pr_number
        self._publish_issue(task)
        if pr_number is not None:
            self._github.merge_pull_request(pr_number)
        self._github.close_issue(
            task.issue_number,
            comment=(
                f"Completed by featurecrew: PR #{pr_number} approved by all reviewers and merged."
            ),
        )
        with self._worktree_lock:
            self._worktrees.return_to_target_branch()
            self._worktrees.cleanup_issue_branch(task.issue_number)
        with self._lock:
            task.status = "completed"
            task.review_history.clear()
        self._publish_issue(task)
        log_event(
            LOGGER,
            "task_completed",
            issue_number=task.issue_number,
            pr_number=pr_number,
            attempts=task.attempts,
        )

    def _reject(self, task: FeatureTask) -> None:
        with self._lock:
            task.status = "rejected"
        self._publish_issue(task)
        log_event(
            LOGGER,
            "task_rejected",
            issue_number=task.issue_number,
            attempt=task.attempts,
            max_attempts=task.max_attempts,
        )
        if task.attempts >= task.max_attempts:
            raise RetryExhaustedError(
                f"Task #{task.issue_number} failed after {task.max_attempts} attempts",
                issue_number=task.issue_number,
            )
        with self._lock:
            task.status = "pending"
        self._publish_issue(task)

    def _architect(self, spec: FeatureSpec) -> tuple[int, ...]:
        self._worktrees.setup_for_architecture(spec.base_branch)
        prompt = build_architecture_prompt(
            spec=spec,
            main_repo_path=self._config.runtime.main_repo_path,
            worktree_path=self._worktrees.path,
            tool_dir=self._worktrees.tool_dir,
        )
        result = self._agent.invoke(
            AgentRequest(
                agent_type="arch",
                prompt=prompt,
                cwd=self._worktrees.path,
                feature_name=spec.name,
            )
        )
        issue_numbers = parse_created_issues(result.output)
        if not issue_numbers:
            log_event(LOGGER, "architecture_issues_not_in_output")
            issue_numbers = self._github.list_issue_numbers_with_label(spec.name)
        try:
            self._worktrees.commit_architecture_changes(issue_numbers)
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "architecture_commit_failed", error_type=type(exc).__name__)
        log_event(LOGGER, "architecture_finished", issues=issue_numbers)
        if not issue_numbers:
            raise FeatureSpecError(f"Architecture phase for {spec.name} produced no issues")
        return issue_numbers

    def _create_feature_pr(self, spec: FeatureSpec) -> None:
        with self._lock:
            completed = [
                self._tasks[number]
                for number in sorted(self._tasks)
                if self._tasks[number].status == "completed"
            ]
        pr_number = self._github.create_pull_request(
            title=f"feat: {readable_feature_title(spec.name)}",
            body=render_feature_pr_body(spec, completed),
            base=spec.base_branch,
            head=self._worktrees.feature_branch,
        )
        log_event(LOGGER, "feature_pr_created", pr_number=pr_number)

    def _publish_issue(self, task: FeatureTask, *, status: IssueStatus | None = None) -> None:
        with self._lock:
            record = IssueRecord(
                number=task.issue_number,
                feature_name=self._feature_name,
                title=task.title,
                status=status or task.status,
                attempts=task.attempts,
                max_attempts=task.max_attempts,
                dependencies=task.dependencies,
                branch=task.branch,
                pr_number=task.pr_number,
                updated_at=self._clock(),
            )
        self._state.create_issue(record)

    def _update_feature(self, **changes: object) -> None:
        self._state.update_feature(self._feature_name, updated_at=self._clock(), **changes)
