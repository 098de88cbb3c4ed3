from __future__ import annotations

from pathlib import Path

import pytest

from featurecrew.config import AgentConfig, AppConfig, ConfigError, RuntimeConfig, load_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_applies_defaults(tmp_path: Path) -> None:
    repo = tmp_path / "code" / "shop"
    cfg_path = _write(
        tmp_path / "featurecrew.toml",
        f"""
[runtime]
main_repo_path = "{repo}"
""",
    )

    cfg = load_config(cfg_path)

    assert isinstance(cfg, AppConfig)
    runtime = cfg.runtime
    assert runtime.main_repo_path == repo
    assert runtime.base_worktree_path == repo.parent
    assert runtime.project_name == "shop"
    assert runtime.state_dir == repo / ".featurecrew" / "state"
    assert runtime.max_concurrent_tasks == 2
    assert runtime.required_approvals == 3
    assert runtime.reviewer_profiles == ("frontend", "backend", "devops")
    assert runtime.default_reviewers == ("frontend", "backend", "devops")
    assert runtime.max_attempts == 3
    assert runtime.poll_interval_seconds == 2.0
    assert runtime.persist_debounce_seconds == 0.5
    assert runtime.session_max_age_seconds == 86400
    assert runtime.protected_pids == frozenset()
    assert cfg.agent == AgentConfig()
    assert cfg.agent.argv == ["claude", "code", "--dangerously-skip-permissions"]


def test_load_config_reads_all_fields(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "featurecrew.toml",
        """
[runtime]
main_repo_path = "/srv/app"
base_worktree_path = "/srv/worktrees"
project_name = "app"
state_dir = "/srv/state"
max_concurrent_tasks = 4
required_approvals = 2
reviewer_profiles = [" backend ", "security"]
max_attempts = 5
poll_interval_seconds = 1
persist_debounce_seconds = 0.25
session_max_age_seconds = 3600
kill_grace_seconds = 3
protected_pids = [1, 4242]

[agent]
binary = "/usr/local/bin/claude"
args = ["--dangerously-skip-permissions"]
timeout_seconds = 600
profiles_dir = "/srv/profiles"
resolve_source_conflicts = true
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.runtime == RuntimeConfig(
        main_repo_path=Path("/srv/app"),
        base_worktree_path=Path("/srv/worktrees"),
        project_name="app",
        state_dir=Path("/srv/state"),
        max_concurrent_tasks=4,
        required_approvals=2,
        reviewer_profiles=("backend", "security"),
        max_attempts=5,
        poll_interval_seconds=1.0,
        persist_debounce_seconds=0.25,
        session_max_age_seconds=3600,
        kill_grace_seconds=3.0,
        protected_pids=frozenset({1, 4242}),
    )
    assert cfg.agent.argv == ["/usr/local/bin/claude", "--dangerously-skip-permissions"]
    assert cfg.agent.timeout_seconds == 600
    assert cfg.agent.profiles_dir == Path("/srv/profiles")
    assert cfg.agent.resolve_source_conflicts is True
    snapshot = cfg.snapshot()
    assert snapshot["reviewer_profiles"] == ["backend", "security"]
    assert snapshot["agent_timeout_seconds"] == 600


@pytest.mark.parametrize(
    ("runtime_lines", "message"),
    [
        ("", "main_repo_path is required"),
        ('main_repo_path = "/r"\nmax_concurrent_tasks = 0', "max_concurrent_tasks must be >= 1"),
        ('main_repo_path = "/r"\nmax_attempts = 0', "max_attempts must be >= 1"),
        ('main_repo_path = "/r"\nreviewer_profiles = []', "at least one profile"),
        ('main_repo_path = "/r"\nrequired_approvals = 4', "required_approvals must be between"),
        ('main_repo_path = "/r"\npoll_interval_seconds = 0', "poll_interval_seconds must be > 0"),
        ('main_repo_path = "/r"\nmax_attempts = true', "max_attempts must be an integer"),
        ('main_repo_path = "/r"\nprotected_pids = [0]', "positive integers"),
        ('main_repo_path = "/r"\nreviewer_profiles = "backend"', "list of strings"),
        ('main_repo_path = "/r"\nkill_grace_seconds = "soon"', "must be a number"),
    ],
)
def test_load_config_rejects_invalid_runtime(
    tmp_path: Path, runtime_lines: str, message: str
) -> None:
    cfg_path = _write(tmp_path / "featurecrew.toml", f"[runtime]\n{runtime_lines}\n")
    with pytest.raises(ConfigError, match=message):
        load_config(cfg_path)


def test_load_config_requires_runtime_table(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path / "featurecrew.toml", 'runtime = "nope"\n')
    with pytest.raises(ConfigError, match=r"\[runtime\] is required"):
        load_config(cfg_path)


def test_load_config_rejects_invalid_agent_table(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "featurecrew.toml",
        '[runtime]\nmain_repo_path = "/r"\n[agent]\ntimeout_seconds = 0\n',
    )
    with pytest.raises(ConfigError, match="agent.timeout_seconds must be >= 1"):
        load_config(cfg_path)

    cfg_path = _write(
        tmp_path / "featurecrew.toml",
        '[runtime]\nmain_repo_path = "/r"\n[agent]\nresolve_source_conflicts = "yes"\n',
    )
    with pytest.raises(ConfigError, match="resolve_source_conflicts must be a boolean"):
        load_config(cfg_path)
