from __future__ import annotations

from pathlib import Path
import time

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from featurecrew.models import AgentRecord, FeatureRecord, IssueRecord
from featurecrew.state import StateSchemaError, StateSnapshot, load_snapshot


_ERROR_MAX_CHARS = 48


class StateMonitorApp(App[None]):
    """Read-only view of the persisted state directory, reloaded on a timer."""

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        state_dir: Path,
        refresh_seconds: float = 2.0,
        feature_filter: str | None = None,
    ) -> None:
        super().__init__()
        self._state_dir = state_dir
        self._refresh_seconds = refresh_seconds
        self._feature_filter = feature_filter
        self._load_error: str | None = None

    @property
    def load_error(self) -> str | None:
        return self._load_error

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Agents", classes="panel-title")
            yield DataTable(id="agents-table")
            yield Static("Features", classes="panel-title")
            yield DataTable(id="features-table")
            yield Static("Issues", classes="panel-title")
            yield DataTable(id="issues-table")
        yield Footer()

    def on_mount(self) -> None:
        self._init_tables()
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.action_focus_next()

    def refresh_data(self) -> None:
        try:
            snapshot = load_snapshot(self._state_dir)
        except (OSError, StateSchemaError) as exc:
            # Keep the last rendered tables; the writer may be mid-replace.
            self._load_error = str(exc)
            self.query_one("#summary", Static).update(f"Failed to load state: {exc}")
            return
        self._load_error = None
        agents = _filter_agents(snapshot, self._feature_filter)
        features = _filter_features(snapshot, self._feature_filter)
        issues = _filter_issues(snapshot, self._feature_filter)
        self.query_one("#summary", Static).update(
            _summary_text(
                snapshot=snapshot,
                agents=agents,
                issues=issues,
                feature_filter=self._feature_filter,
            )
        )
        _fill_agents(self.query_one("#agents-table", DataTable), agents, now=time.time())
        _fill_features(self.query_one("#features-table", DataTable), features)
        _fill_issues(self.query_one("#issues-table", DataTable), issues)

    def _init_tables(self) -> None:
        self.query_one("#agents-table", DataTable).add_columns(
            "Agent", "Type", "Status", "Feature", "Issue", "Elapsed", "Error"
        )
        self.query_one("#features-table", DataTable).add_columns(
            "Feature", "Status", "Base", "Parent", "Arch", "Issues", "Error"
        )
        self.query_one("#issues-table", DataTable).add_columns(
            "Issue", "Feature", "Title", "Status", "Attempts", "Depends On", "PR", "Branch"
        )


def run_state_monitor(
    *, state_dir: Path, refresh_seconds: float = 2.0, feature_filter: str | None = None
) -> None:
    app = StateMonitorApp(
        state_dir=state_dir, refresh_seconds=refresh_seconds, feature_filter=feature_filter
    )
    app.run()


def _filter_agents(snapshot: StateSnapshot, feature: str | None) -> tuple[AgentRecord, ...]:
    agents = sorted(snapshot.agents.values(), key=lambda a: (a.start_time or 0.0, a.id))
    return tuple(a for a in agents if feature is None or a.feature_name == feature)


def _filter_features(snapshot: StateSnapshot, feature: str | None) -> tuple[FeatureRecord, ...]:
    features = sorted(snapshot.features.values(), key=lambda f: f.created_at)
    return tuple(f for f in features if feature is None or f.name == feature)


def _filter_issues(snapshot: StateSnapshot, feature: str | None) -> tuple[IssueRecord, ...]:
    issues = sorted(snapshot.issues.values(), key=lambda i: i.number)
    return tuple(i for i in issues if feature is None or i.feature_name == feature)


def _fill_agents(table: DataTable, agents: tuple[AgentRecord, ...], *, now: float) -> None:
    table.clear(columns=False)
    for agent in agents:
        table.add_row(
            agent.id,
            agent.agent_type,
            agent.status,
            agent.feature_name or "-",
            str(agent.issue_number) if agent.issue_number is not None else "-",
            _render_elapsed(agent, now=now),
            _render_snippet(agent.error, max_chars=_ERROR_MAX_CHARS),
        )


def _fill_features(table: DataTable, features: tuple[FeatureRecord, ...]) -> None:
    table.clear(columns=False)
    for feature in features:
        table.add_row(
            feature.name,
            feature.status,
            feature.base_branch,
            "yes" if feature.is_parent_feature else "no",
            "yes" if feature.architecture_mode else "no",
            _render_numbers(feature.issues),
            _render_snippet(feature.error, max_chars=_ERROR_MAX_CHARS),
        )


def _fill_issues(table: DataTable, issues: tuple[IssueRecord, ...]) -> None:
    table.clear(columns=False)
    for issue in issues:
        table.add_row(
            str(issue.number),
            issue.feature_name,
            issue.title,
            issue.status,
            f"{issue.attempts}/{issue.max_attempts}",
            _render_numbers(issue.dependencies),
            str(issue.pr_number) if issue.pr_number is not None else "-",
            issue.branch or "-",
        )


def _summary_text(
    *,
    snapshot: StateSnapshot,
    agents: tuple[AgentRecord, ...],
    issues: tuple[IssueRecord, ...],
    feature_filter: str | None,
) -> str:
    running = sum(1 for agent in agents if agent.status == "running")
    completed = sum(1 for issue in issues if issue.status == "completed")
    failed = sum(1 for issue in issues if issue.status == "failed")
    saved = (
        time.strftime("%H:%M:%S", time.localtime(snapshot.saved_at))
        if snapshot.saved_at is not None
        else "never"
    )
    return (
        " | ".join(
            [
                f"feature={feature_filter or 'all'}",
                f"running_agents={running}",
                f"issues={len(issues)}",
                f"completed={completed}",
                f"failed={failed}",
                f"saved={saved}",
            ]
        )
        + "\nKeys: r refresh | tab focus | q quit"
    )


def _render_elapsed(agent: AgentRecord, *, now: float) -> str:
    if agent.start_time is None:
        return "-"
    end = agent.end_time if agent.end_time is not None else now
    return _render_seconds(max(0.0, end - agent.start_time))


def _render_seconds(value: float) -> str:
    if value < 60:
        return f"{value:.1f}s"
    if value < 3600:
        return f"{value / 60.0:.1f}m"
    return f"{value / 3600.0:.2f}h"


def _render_numbers(numbers: tuple[int, ...]) -> str:
    return ", ".join(f"#{n}" for n in numbers) or "-"


def _render_snippet(value: str | None, *, max_chars: int) -> str:
    if not value:
        return "-"
    collapsed = " ".join(value.split())
    if len(collapsed) <= max_chars:
        return collapsed
    return collapsed[: max_chars - 3] + "..."
