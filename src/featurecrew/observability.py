from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, cast


ROOT_LOGGER: Final[str] = "featurecrew"
LOG_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)s %(name)s [%(threadName)s] feature=%(feature_name)s %(message)s"
)
# Milestones kept by the "low" verbosity mode. Warnings and errors always pass.
MILESTONE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "feature_run_started",
        "feature_run_finished",
        "task_dispatched",
        "task_completed",
        "task_rejected",
        "task_failed",
        "review_round_finished",
        "agent_invocation_started",
        "agent_invocation_finished",
        "merge_conflict_unresolved",
        "state_persist_failed",
        "process_kill_escalated",
    }
)
DEFAULT_LOG_RETENTION_DAYS: Final[int] = 14

_MAX_FIELD_CHARS: Final[int] = 120
_UNSET_FEATURE: Final[str] = "-"
_current_feature: ContextVar[str] = ContextVar("featurecrew_feature", default=_UNSET_FEATURE)

Verbosity = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
) -> None:
    """Install stderr (and optionally per-day file) handlers on the ``featurecrew`` logger.

    Safe to call repeatedly: existing handlers are closed and replaced.
    """
    verbosity = _parse_verbosity(verbose)
    root = logging.getLogger(ROOT_LOGGER)
    root.propagate = False
    while root.handlers:
        old = root.handlers.pop()
        old.close()

    if verbosity is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(DailyLogFileHandler(state_dir / "logs", retention_days=retention_days))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(EventFilter(milestones_only=verbosity == "low"))
        root.addHandler(handler)
    root.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields), extra={"event": event})


def format_event(event: str, fields: Mapping[str, object]) -> str:
    rendered = [f"event={_render_value(event)}"]
    rendered.extend(f"{key}={_render_value(fields[key])}" for key in sorted(fields))
    return " ".join(rendered)


@contextmanager
def logging_feature_context(feature_name: str) -> Iterator[None]:
    """Tag every record emitted in this context with the feature being worked on."""
    token = _current_feature.set(feature_name or _UNSET_FEATURE)
    try:
        yield
    finally:
        _current_feature.reset(token)


class EventFilter(logging.Filter):
    """Stamps ``feature_name`` on records and optionally drops non-milestone chatter."""

    def __init__(self, *, milestones_only: bool = False) -> None:
        super().__init__()
        self.milestones_only = milestones_only

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "feature_name"):
            record.feature_name = _current_feature.get()
        if not self.milestones_only or record.levelno >= logging.WARNING:
            return True
        return getattr(record, "event", None) in MILESTONE_EVENTS


class DailyLogFileHandler(logging.FileHandler):
    """Appends to ``<log_dir>/featurecrew-<UTC date>.log``, switching files at UTC midnight.

    Files older than ``retention_days`` are pruned whenever a new day's file is opened.
    """

    def __init__(self, log_dir: Path, *, retention_days: int = DEFAULT_LOG_RETENTION_DAYS) -> None:
        self.log_dir = log_dir
        self.retention_days = retention_days
        self._day = _utc_day()
        log_dir.mkdir(parents=True, exist_ok=True)
        super().__init__(self._path_for(self._day), encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        day = _utc_day()
        if day != self._day:
            self.acquire()
            try:
                self._roll_over(day)
            finally:
                self.release()
        super().emit(record)

    def _path_for(self, day: str) -> Path:
        return self.log_dir / f"featurecrew-{day}.log"

    def _roll_over(self, day: str) -> None:
        if self.stream is not None:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self._day = day
        self.baseFilename = str(self._path_for(day))
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.prune()

    def prune(self) -> list[Path]:
        cutoff = datetime.now(timezone.utc).date().toordinal() - self.retention_days
        removed: list[Path] = []
        for path in self.log_dir.glob("featurecrew-*.log"):
            stamp = path.stem.removeprefix("featurecrew-")
            try:
                ordinal = datetime.strptime(stamp, "%Y-%m-%d").date().toordinal()
            except ValueError:
                continue
            if ordinal < cutoff:
                path.unlink(missing_ok=True)
                removed.append(path)
        return removed


def _utc_day() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _parse_verbosity(verbose: bool | str | None) -> Verbosity | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(Verbosity, mode)


def _render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float | Path):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())[: _MAX_FIELD_CHARS + 1]
        if len(text) > _MAX_FIELD_CHARS:
            text = text[:_MAX_FIELD_CHARS] + "..."
        text = text or "<empty>"
    elif isinstance(value, tuple | list):
        text = ",".join(_render_value(item) for item in value) or "<empty>"
    else:
        text = f"<{type(value).__name__}>"
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text
