from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast


TOOL_DIR_NAME = ".featurecrew"


@dataclass(frozen=True)
class RuntimeConfig:
    main_repo_path: Path
    base_worktree_path: Path
    project_name: str
    state_dir: Path
    max_concurrent_tasks: int = 2
    required_approvals: int = 3
    reviewer_profiles: tuple[str, ...] = ("frontend", "backend", "devops")
    max_attempts: int = 3
    poll_interval_seconds: float = 2.0
    persist_debounce_seconds: float = 0.5
    session_max_age_seconds: int = 24 * 60 * 60
    kill_grace_seconds: float = 10.0
    protected_pids: frozenset[int] = frozenset()

    @property
    def default_reviewers(self) -> tuple[str, ...]:
        return self.reviewer_profiles[: self.required_approvals]


@dataclass(frozen=True)
class AgentConfig:
    binary: str = "claude"
    args: tuple[str, ...] = ("code", "--dangerously-skip-permissions")
    timeout_seconds: int = 60 * 60
    profiles_dir: Path | None = None
    resolve_source_conflicts: bool = False

    @property
    def argv(self) -> list[str]:
        return [self.binary, *self.args]


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    agent: AgentConfig

    def snapshot(self) -> dict[str, object]:
        """Effective settings as plain JSON values, persisted next to the app state."""
        runtime = self.runtime
        return {
            "main_repo_path": str(runtime.main_repo_path),
            "base_worktree_path": str(runtime.base_worktree_path),
            "project_name": runtime.project_name,
            "max_concurrent_tasks": runtime.max_concurrent_tasks,
            "required_approvals": runtime.required_approvals,
            "reviewer_profiles": list(runtime.reviewer_profiles),
            "max_attempts": runtime.max_attempts,
            "poll_interval_seconds": runtime.poll_interval_seconds,
            "agent_binary": self.agent.binary,
            "agent_timeout_seconds": self.agent.timeout_seconds,
        }


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    root = _Table("", data)
    runtime_table = root.table("runtime", required=True)
    agent_table = root.table("agent")

    main_repo_path = Path(runtime_table.string("main_repo_path")).expanduser()
    runtime = RuntimeConfig(
        main_repo_path=main_repo_path,
        base_worktree_path=runtime_table.path("base_worktree_path", main_repo_path.parent),
        project_name=runtime_table.string("project_name", main_repo_path.name),
        state_dir=runtime_table.path("state_dir", main_repo_path / TOOL_DIR_NAME / "state"),
        max_concurrent_tasks=runtime_table.integer("max_concurrent_tasks", 2, minimum=1),
        required_approvals=runtime_table.integer("required_approvals", 3, minimum=1),
        reviewer_profiles=runtime_table.strings(
            "reviewer_profiles", ("frontend", "backend", "devops")
        ),
        max_attempts=runtime_table.integer("max_attempts", 3, minimum=1),
        poll_interval_seconds=runtime_table.number("poll_interval_seconds", 2.0),
        persist_debounce_seconds=runtime_table.number(
            "persist_debounce_seconds", 0.5, allow_zero=True
        ),
        session_max_age_seconds=runtime_table.integer(
            "session_max_age_seconds", 24 * 60 * 60, minimum=1
        ),
        kill_grace_seconds=runtime_table.number("kill_grace_seconds", 10.0, allow_zero=True),
        protected_pids=frozenset(runtime_table.pids("protected_pids")),
    )
    if not runtime.reviewer_profiles:
        raise ConfigError("runtime.reviewer_profiles must contain at least one profile")
    if runtime.required_approvals > len(runtime.reviewer_profiles):
        raise ConfigError(
            "runtime.required_approvals must be between 1 and the number of reviewer_profiles"
        )

    agent = AgentConfig(
        binary=agent_table.string("binary", "claude"),
        args=agent_table.strings("args", ("code", "--dangerously-skip-permissions")),
        timeout_seconds=agent_table.integer("timeout_seconds", 60 * 60, minimum=1),
        profiles_dir=agent_table.optional_path("profiles_dir"),
        resolve_source_conflicts=agent_table.boolean("resolve_source_conflicts", False),
    )
    return AppConfig(runtime=runtime, agent=agent)


_MISSING = object()


class _Table:
    """Typed reads from one TOML table; errors name the setting as ``section.key``."""

    def __init__(self, section: str, data: dict[str, object]) -> None:
        self._section = section
        self._data = data

    def _name(self, key: str) -> str:
        return f"{self._section}.{key}" if self._section else key

    def _get(self, key: str, default: object = _MISSING) -> object:
        value = self._data.get(key, default)
        if value is _MISSING:
            raise ConfigError(f"{self._name(key)} is required and must be a non-empty string")
        return value

    def table(self, key: str, *, required: bool = False) -> _Table:
        value = self._data.get(key)
        if value is None and not required:
            return _Table(self._name(key), {})
        if not isinstance(value, dict):
            raise ConfigError(f"[{self._name(key)}] is required and must be a TOML table")
        if not all(isinstance(item, str) for item in value):
            raise ConfigError(f"[{self._name(key)}] must have string keys")
        return _Table(self._name(key), cast(dict[str, object], value))

    def string(self, key: str, default: object = _MISSING) -> str:
        value = self._get(key, default)
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{self._name(key)} is required and must be a non-empty string")
        return value

    def optional_path(self, key: str) -> Path | None:
        if self._data.get(key) is None:
            return None
        return Path(self.string(key)).expanduser()

    def path(self, key: str, default: Path) -> Path:
        return self.optional_path(key) or default

    def integer(self, key: str, default: int, *, minimum: int) -> int:
        value = self._get(key, default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{self._name(key)} must be an integer")
        if value < minimum:
            raise ConfigError(f"{self._name(key)} must be >= {minimum}")
        return value

    def number(self, key: str, default: float, *, allow_zero: bool = False) -> float:
        value = self._get(key, default)
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ConfigError(f"{self._name(key)} must be a number")
        if value < 0 or (value == 0 and not allow_zero):
            bound = ">= 0" if allow_zero else "> 0"
            raise ConfigError(f"{self._name(key)} must be {bound}")
        return float(value)

    def boolean(self, key: str, default: bool) -> bool:
        value = self._get(key, default)
        if not isinstance(value, bool):
            raise ConfigError(f"{self._name(key)} must be a boolean")
        return value

    def strings(self, key: str, default: tuple[str, ...]) -> tuple[str, ...]:
        value = self._get(key, list(default))
        if not isinstance(value, list) or not all(
            isinstance(item, str) and item.strip() for item in value
        ):
            raise ConfigError(f"{self._name(key)} must be a list of strings")
        return tuple(item.strip() for item in value)

    def pids(self, key: str) -> tuple[int, ...]:
        value = self._get(key, [])
        if not isinstance(value, list) or not all(
            isinstance(item, int) and not isinstance(item, bool) and item > 0 for item in value
        ):
            raise ConfigError(f"{self._name(key)} must be a list of positive integers")
        return tuple(value)
