from __future__ import annotations

import argparse
from pathlib import Path
import signal
import sys
from types import FrameType

from featurecrew.claude_adapter import ClaudeAdapter
from featurecrew.config import AppConfig, load_config
from featurecrew.git_ops import GitOps
from featurecrew.github_gateway import GitHubGateway
from featurecrew.merge_conflicts import MergeConflictResolver, build_agent_conflict_resolver
from featurecrew.models import FeatureSpec
from featurecrew.observability import configure_logging
from featurecrew.observability_tui import run_state_monitor
from featurecrew.orchestrator import FeatureOrchestrator, RunOutcome
from featurecrew.process_registry import ProcessRegistry
from featurecrew.state import StateStore
from featurecrew.worktrees import WorktreeLifecycleManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="featurecrew")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init", help="Create the state directory and config snapshot"
    )
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Solve, review and merge the issues of one feature"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument("--feature", required=True, help="Feature name, used for branches")
    run_parser.add_argument("--description", default="", help="Feature description")
    run_parser.add_argument("--base-branch", default="main", help="Branch the feature targets")
    run_parser.add_argument(
        "--issues", type=int, nargs="+", default=[], help="Issue numbers to process"
    )
    run_parser.add_argument(
        "--parent",
        action="store_true",
        help="Collect issue work on feature/<name> and open one aggregate pull request",
    )
    run_parser.add_argument(
        "--arch",
        action="store_true",
        help="Run the architecture agent first and process the issues it creates",
    )

    watch_parser = subparsers.add_parser("watch", help="Open the terminal state viewer")
    _add_common_arguments(watch_parser)
    watch_parser.add_argument("--feature", default=None, help="Only show this feature")
    watch_parser.add_argument(
        "--refresh-seconds", type=float, default=2.0, help="Reload interval for the viewer"
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("featurecrew.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(bool(getattr(args, "verbose", False)), state_dir=config.runtime.state_dir)

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        outcome = _cmd_run(config, _feature_spec(args))
        if not outcome.success:
            sys.exit(1)
        return
    if args.command == "watch":
        run_state_monitor(
            state_dir=config.runtime.state_dir,
            refresh_seconds=float(args.refresh_seconds),
            feature_filter=args.feature,
        )
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _feature_spec(args: argparse.Namespace) -> FeatureSpec:
    return FeatureSpec(
        name=str(args.feature),
        description=str(args.description),
        base_branch=str(args.base_branch),
        issues=tuple(args.issues),
        is_parent_feature=bool(args.parent),
        architecture_mode=bool(args.arch),
    )


def _cmd_init(config: AppConfig) -> None:
    state = _open_state(config)
    state.close()
    print(f"Initialized featurecrew state dir: {config.runtime.state_dir}")
    print(f"State: {state.app_state_path}")
    print(f"Config snapshot: {state.config_path}")


def _cmd_run(config: AppConfig, spec: FeatureSpec) -> RunOutcome:
    state = _open_state(config)
    try:
        orchestrator = _build_orchestrator(config, state=state, feature_name=spec.name)
        previous = _install_cancel_handlers(orchestrator)
        try:
            outcome = orchestrator.execute(spec)
        finally:
            _restore_handlers(previous)
    finally:
        state.close()
    _print_outcome(outcome)
    return outcome


def _open_state(config: AppConfig) -> StateStore:
    runtime = config.runtime
    state = StateStore(
        runtime.state_dir,
        debounce_seconds=runtime.persist_debounce_seconds,
        session_max_age_seconds=runtime.session_max_age_seconds,
    )
    state.initialize()
    state.update_config(config.snapshot())
    return state


def _build_orchestrator(
    config: AppConfig, *, state: StateStore, feature_name: str
) -> FeatureOrchestrator:
    runtime = config.runtime
    registry = ProcessRegistry(
        protected_pids=runtime.protected_pids, grace_seconds=runtime.kill_grace_seconds
    )
    agent = ClaudeAdapter(config.agent, registry=registry, state=state)
    git = GitOps()
    resolver = MergeConflictResolver(
        git,
        agent_resolver=(
            build_agent_conflict_resolver(agent, feature_name=feature_name)
            if config.agent.resolve_source_conflicts
            else None
        ),
    )
    worktrees = WorktreeLifecycleManager(
        git=git,
        resolver=resolver,
        main_repo_path=runtime.main_repo_path,
        base_worktree_path=runtime.base_worktree_path,
        project_name=runtime.project_name,
        feature_name=feature_name,
        state=state,
    )
    return FeatureOrchestrator(
        config,
        state=state,
        github=GitHubGateway(runtime.main_repo_path),
        worktrees=worktrees,
        agent=agent,
        registry=registry,
    )


_CancelHandlers = dict[signal.Signals, object]


def _install_cancel_handlers(orchestrator: FeatureOrchestrator) -> _CancelHandlers:
    def handle(signum: int, frame: FrameType | None) -> None:
        print(f"Received {signal.Signals(signum).name}; cancelling...", file=sys.stderr)
        orchestrator.cancel()

    previous: _CancelHandlers = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handle)
    return previous


def _restore_handlers(previous: _CancelHandlers) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)  # type: ignore[arg-type]


def _print_outcome(outcome: RunOutcome) -> None:
    completed = ", ".join(f"#{n}" for n in outcome.completed_issues) or "none"
    if outcome.success:
        print(f"Feature {outcome.feature_name} completed. Issues: {completed}")
        return
    print(f"Feature {outcome.feature_name} failed: {outcome.error}", file=sys.stderr)
    if outcome.failed_issue is not None:
        print(f"Failed issue: #{outcome.failed_issue}", file=sys.stderr)
    print(f"Completed before failure: {completed}", file=sys.stderr)
