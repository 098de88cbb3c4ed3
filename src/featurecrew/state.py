from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, fields, replace
import json
import logging
import os
from pathlib import Path
import secrets
import threading
import time
from typing import Any, Final, TypeVar, cast
import uuid

from featurecrew.models import (
    AgentRecord,
    ChangeType,
    FeatureRecord,
    IssueRecord,
    SessionRecord,
    StateChange,
    WorktreeRecord,
)
from featurecrew.observability import log_event


LOGGER = logging.getLogger("featurecrew.state")

SCHEMA_VERSION: Final[int] = 1
APP_STATE_FILENAME: Final[str] = "app-state.json"
CONFIG_FILENAME: Final[str] = "config.json"
MAX_AGENT_LOG_LINES: Final[int] = 1000

Subscriber = Callable[[StateChange], None]
_RecordT = TypeVar("_RecordT")

_COLLECTIONS: Final[tuple[tuple[str, type[Any]], ...]] = (
    ("agents", AgentRecord),
    ("features", FeatureRecord),
    ("issues", IssueRecord),
    ("worktrees", WorktreeRecord),
    ("sessions", SessionRecord),
)


class StateSchemaError(RuntimeError):
    pass


@dataclass(frozen=True)
class StateSnapshot:
    agents: dict[str, AgentRecord]
    features: dict[str, FeatureRecord]
    issues: dict[int, IssueRecord]
    worktrees: dict[str, WorktreeRecord]
    sessions: dict[str, SessionRecord]
    saved_at: float | None = None


class CoalescingWriter:
    """Runs ``write`` on a background thread, folding bursts of requests into one call.

    The first request of a burst opens a window of ``debounce_seconds``; every request
    arriving inside the window is served by the same write. Writes never overlap.
    ``close`` performs any pending write before returning.
    """

    def __init__(
        self,
        write: Callable[[], None],
        *,
        debounce_seconds: float,
        name: str = "featurecrew-state-writer",
    ) -> None:
        self._write = write
        self._debounce_seconds = debounce_seconds
        self._name = name
        self._cond = threading.Condition()
        self._write_lock = threading.Lock()
        self._pending = False
        self._deadline = 0.0
        self._closed = False
        self._thread: threading.Thread | None = None

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._pending

    def request(self) -> None:
        with self._cond:
            if self._closed:
                write_now = True
            else:
                write_now = False
                if not self._pending:
                    self._pending = True
                    self._deadline = time.monotonic() + self._debounce_seconds
                if self._thread is None:
                    self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
                    self._thread.start()
                self._cond.notify_all()
        if write_now:
            self._run_write()

    def flush(self) -> None:
        with self._cond:
            self._pending = False
        self._run_write()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            thread = self._thread
            self._cond.notify_all()
        if thread is not None:
            thread.join()
        with self._cond:
            pending = self._pending
            self._pending = False
        if pending:
            self._run_write()

    def _loop(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                remaining = self._deadline - time.monotonic()
                if remaining > 0:
                    self._cond.wait(remaining)
                    continue
                self._pending = False
            self._run_write()

    def _run_write(self) -> None:
        with self._write_lock:
            try:
                self._write()
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "state_persist_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )


class StateStore:
    """Authoritative in-memory state for agents, features, issues, worktrees and sessions.

    Every mutation emits a ``StateChange`` to subscribers, in mutation order, and schedules
    a coalesced write of the whole state to ``<state_dir>/app-state.json``.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        debounce_seconds: float = 0.5,
        session_max_age_seconds: int = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._state_dir = state_dir
        self._session_max_age_seconds = session_max_age_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._agents: dict[str, AgentRecord] = {}
        self._features: dict[str, FeatureRecord] = {}
        self._issues: dict[int, IssueRecord] = {}
        self._worktrees: dict[str, WorktreeRecord] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._config: dict[str, object] = {}
        self._subscribers: list[Subscriber] = []
        self._writer = CoalescingWriter(self._persist, debounce_seconds=debounce_seconds)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def app_state_path(self) -> Path:
        return self._state_dir / APP_STATE_FILENAME

    @property
    def config_path(self) -> Path:
        return self._state_dir / CONFIG_FILENAME

    def initialize(self) -> None:
        self._state_dir.mkdir(parents=True, exist_ok=True)
        snapshot = load_snapshot(self._state_dir)
        config = _load_config_document(self.config_path)
        with self._lock:
            self._agents = snapshot.agents
            self._features = snapshot.features
            self._issues = snapshot.issues
            self._worktrees = snapshot.worktrees
            self._sessions = snapshot.sessions
            self._config = config
        removed = self.cleanup_expired_sessions()
        log_event(
            LOGGER,
            "state_initialized",
            state_dir=str(self._state_dir),
            agent_count=len(snapshot.agents),
            feature_count=len(snapshot.features),
            issue_count=len(snapshot.issues),
            expired_sessions=removed,
        )

    def flush(self) -> None:
        self._writer.flush()

    def close(self) -> None:
        self._writer.close()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # Agents

    def create_agent(self, record: AgentRecord) -> AgentRecord:
        return self._create(self._agents, "agent", record.id, record)

    def update_agent(self, agent_id: str, **changes: object) -> AgentRecord:
        return self._update(self._agents, "agent", agent_id, changes)

    def append_agent_logs(self, agent_id: str, lines: Iterable[str]) -> AgentRecord:
        with self._lock:
            current = self._require(self._agents, agent_id)
            logs = (*current.logs, *lines)[-MAX_AGENT_LOG_LINES:]
            updated = self._replace_locked(self._agents, "agent", agent_id, {"logs": logs})
        self._writer.request()
        return updated

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._lock:
            return self._agents.get(agent_id)

    def list_agents(self) -> tuple[AgentRecord, ...]:
        with self._lock:
            return tuple(self._agents.values())

    def delete_agent(self, agent_id: str) -> bool:
        return self._delete(self._agents, "agent", agent_id)

    # Features

    def create_feature(self, record: FeatureRecord) -> FeatureRecord:
        return self._create(self._features, "feature", record.name, record)

    def update_feature(self, name: str, **changes: object) -> FeatureRecord:
        return self._update(self._features, "feature", name, changes)

    def get_feature(self, name: str) -> FeatureRecord | None:
        with self._lock:
            return self._features.get(name)

    def list_features(self) -> tuple[FeatureRecord, ...]:
        with self._lock:
            return tuple(self._features.values())

    def delete_feature(self, name: str) -> bool:
        return self._delete(self._features, "feature", name)

    # Issues

    def create_issue(self, record: IssueRecord) -> IssueRecord:
        return self._create(self._issues, "issue", record.number, record)

    def update_issue(self, number: int, **changes: object) -> IssueRecord:
        return self._update(self._issues, "issue", number, changes)

    def get_issue(self, number: int) -> IssueRecord | None:
        with self._lock:
            return self._issues.get(number)

    def list_issues(self, *, feature_name: str | None = None) -> tuple[IssueRecord, ...]:
        with self._lock:
            return tuple(
                record
                for record in self._issues.values()
                if feature_name is None or record.feature_name == feature_name
            )

    def delete_issue(self, number: int) -> bool:
        return self._delete(self._issues, "issue", number)

    # Worktrees

    def create_worktree(self, record: WorktreeRecord) -> WorktreeRecord:
        return self._create(self._worktrees, "worktree", record.name, record)

    def update_worktree(self, name: str, **changes: object) -> WorktreeRecord:
        return self._update(self._worktrees, "worktree", name, changes)

    def get_worktree(self, name: str) -> WorktreeRecord | None:
        with self._lock:
            return self._worktrees.get(name)

    def list_worktrees(self) -> tuple[WorktreeRecord, ...]:
        with self._lock:
            return tuple(self._worktrees.values())

    def delete_worktree(self, name: str) -> bool:
        return self._delete(self._worktrees, "worktree", name)

    # Sessions

    def create_session(self) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            id=uuid.uuid4().hex,
            token=secrets.token_hex(32),
            created_at=now,
            last_access=now,
        )
        return self._create(self._sessions, "session", record.id, record)

    def validate_session(self, token: str) -> SessionRecord | None:
        now = self._clock()
        with self._lock:
            match = next(
                (
                    record
                    for record in self._sessions.values()
                    if secrets.compare_digest(record.token, token)
                ),
                None,
            )
            if match is None or now - match.last_access > self._session_max_age_seconds:
                return None
            updated = self._replace_locked(
                self._sessions, "session", match.id, {"last_access": now}
            )
        self._writer.request()
        return updated

    def delete_session(self, session_id: str) -> bool:
        return self._delete(self._sessions, "session", session_id)

    def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                record.id
                for record in self._sessions.values()
                if now - record.last_access > self._session_max_age_seconds
            ]
            for session_id in expired:
                self._remove_locked(self._sessions, "session", session_id)
        if expired:
            self._writer.request()
        return len(expired)

    # Config

    def get_config(self) -> dict[str, object]:
        with self._lock:
            return dict(self._config)

    def update_config(self, changes: Mapping[str, object]) -> dict[str, object]:
        with self._lock:
            self._config.update(changes)
            config = dict(self._config)
            self._emit(StateChange(type="config", action="update", id="system", data=config))
        self._writer.request()
        return config

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "schema_version": SCHEMA_VERSION,
                "saved_at": self._clock(),
                "agents": {key: asdict(value) for key, value in self._agents.items()},
                "features": {key: asdict(value) for key, value in self._features.items()},
                "issues": {str(key): asdict(value) for key, value in self._issues.items()},
                "worktrees": {key: asdict(value) for key, value in self._worktrees.items()},
                "sessions": {key: asdict(value) for key, value in self._sessions.items()},
            }

    def _create(
        self,
        collection: dict[Any, _RecordT],
        change_type: ChangeType,
        key: str | int,
        record: _RecordT,
    ) -> _RecordT:
        with self._lock:
            action = "update" if key in collection else "create"
            collection[key] = record
            self._emit(StateChange(type=change_type, action=action, id=str(key), data=record))
        self._writer.request()
        return record

    # Write requests are issued after the lock is released so an inline write after
    # close() can take the lock for its snapshot.

    def _update(
        self,
        collection: dict[Any, _RecordT],
        change_type: ChangeType,
        key: str | int,
        changes: Mapping[str, object],
    ) -> _RecordT:
        with self._lock:
            updated = self._replace_locked(collection, change_type, key, changes)
        self._writer.request()
        return updated

    def _delete(
        self, collection: dict[Any, _RecordT], change_type: ChangeType, key: str | int
    ) -> bool:
        with self._lock:
            removed = self._remove_locked(collection, change_type, key)
        if removed:
            self._writer.request()
        return removed

    def _replace_locked(
        self,
        collection: dict[Any, _RecordT],
        change_type: ChangeType,
        key: str | int,
        changes: Mapping[str, object],
    ) -> _RecordT:
        current = self._require(collection, key)
        updated = cast(_RecordT, replace(cast(Any, current), **changes))
        collection[key] = updated
        self._emit(StateChange(type=change_type, action="update", id=str(key), data=updated))
        return updated

    def _remove_locked(
        self, collection: dict[Any, _RecordT], change_type: ChangeType, key: str | int
    ) -> bool:
        if key not in collection:
            return False
        del collection[key]
        self._emit(StateChange(type=change_type, action="delete", id=str(key), data=None))
        return True

    def _require(self, collection: dict[Any, _RecordT], key: str | int) -> _RecordT:
        record = collection.get(key)
        if record is None:
            raise KeyError(f"Unknown state record: {key!r}")
        return record

    def _emit(self, change: StateChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "state_subscriber_failed",
                    change_type=change.type,
                    change_id=change.id,
                    error_type=type(exc).__name__,
                )

    def _persist(self) -> None:
        document = self.snapshot()
        with self._lock:
            config = dict(self._config)
        _write_json_atomic(self.app_state_path, document)
        _write_json_atomic(
            self.config_path, {"schema_version": SCHEMA_VERSION, "config": config}
        )
        log_event(LOGGER, "state_persisted", path=str(self.app_state_path))


def load_snapshot(state_dir: Path) -> StateSnapshot:
    """Read ``app-state.json`` from ``state_dir``; a missing file is an empty state."""
    path = state_dir / APP_STATE_FILENAME
    if not path.exists():
        return StateSnapshot(agents={}, features={}, issues={}, worktrees={}, sessions={})
    document = _read_versioned_document(path)

    decoded: dict[str, dict[Any, Any]] = {}
    for collection_name, record_type in _COLLECTIONS:
        raw_collection = document.get(collection_name, {})
        if not isinstance(raw_collection, dict):
            raise StateSchemaError(f"{path}: {collection_name} must be a JSON object")
        items: dict[Any, Any] = {}
        for raw_key, raw_value in raw_collection.items():
            if not isinstance(raw_value, dict):
                raise StateSchemaError(f"{path}: {collection_name}.{raw_key} must be an object")
            key: str | int = int(raw_key) if collection_name == "issues" else raw_key
            items[key] = _decode_record(record_type, raw_value, path=path)
        decoded[collection_name] = items

    saved_at = document.get("saved_at")
    return StateSnapshot(
        agents=decoded["agents"],
        features=decoded["features"],
        issues=decoded["issues"],
        worktrees=decoded["worktrees"],
        sessions=decoded["sessions"],
        saved_at=float(saved_at) if isinstance(saved_at, int | float) else None,
    )


def _load_config_document(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    document = _read_versioned_document(path)
    config = document.get("config", {})
    if not isinstance(config, dict):
        raise StateSchemaError(f"{path}: config must be a JSON object")
    return cast(dict[str, object], config)


def _read_versioned_document(path: Path) -> dict[str, object]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise StateSchemaError(f"Unreadable state file {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise StateSchemaError(f"{path}: expected a JSON object")
    version = document.get("schema_version")
    if version != SCHEMA_VERSION:
        raise StateSchemaError(
            f"{path}: unsupported schema_version {version!r} (expected {SCHEMA_VERSION})"
        )
    return cast(dict[str, object], document)


def _decode_record(record_type: type[_RecordT], raw: dict[str, object], *, path: Path) -> _RecordT:
    known = {item.name for item in fields(cast(Any, record_type))}
    kwargs = {
        key: tuple(value) if isinstance(value, list) else value
        for key, value in raw.items()
        if key in known
    }
    try:
        return record_type(**kwargs)
    except TypeError as exc:
        raise StateSchemaError(f"{path}: invalid {record_type.__name__} record: {exc}") from exc


def _write_json_atomic(path: Path, document: Mapping[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp_path, path)
