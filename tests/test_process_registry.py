from __future__ import annotations

import os
import signal
import subprocess
import sys
from typing import cast

import pytest

from featurecrew.process_registry import ProcessRegistry


def _spawn(code: str) -> subprocess.Popen[str]:
    return subprocess.Popen(
        [sys.executable, "-c", code],
        stdout=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )


class FakeProc:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.signals: list[int] = []

    def poll(self) -> int | None:
        return None

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)


def test_own_pid_is_always_protected() -> None:
    registry = ProcessRegistry(protected_pids=[4242])
    assert registry.is_protected(os.getpid())
    assert registry.is_protected(4242)
    assert not registry.is_protected(4243)


def test_owned_context_registers_and_unregisters() -> None:
    registry = ProcessRegistry()
    proc = cast(subprocess.Popen[str], FakeProc(999_999))
    with registry.owned(proc):
        assert registry.owned_pids() == (999_999,)
    assert registry.owned_pids() == ()


def test_terminate_skips_protected_process(monkeypatch: pytest.MonkeyPatch) -> None:
    killed: list[tuple[int, int]] = []
    monkeypatch.setattr(
        "featurecrew.process_registry.os.killpg", lambda p, s: killed.append((p, s))
    )
    fake = FakeProc(4242)
    registry = ProcessRegistry(protected_pids=[4242])

    registry.terminate(cast(subprocess.Popen[str], fake))

    assert killed == []
    assert fake.signals == []


def test_terminate_all_stops_cooperative_children() -> None:
    registry = ProcessRegistry(grace_seconds=5.0)
    procs = [_spawn("import time; time.sleep(60)") for _ in range(2)]
    for proc in procs:
        registry.register(proc)

    assert registry.terminate_all() == 2

    for proc in procs:
        assert proc.returncode == -signal.SIGTERM
        assert proc.stdout is not None
        proc.stdout.close()


def test_terminate_escalates_to_sigkill_when_sigterm_is_ignored() -> None:
    registry = ProcessRegistry(grace_seconds=0.3)
    proc = _spawn(
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    )
    assert proc.stdout is not None
    assert proc.stdout.readline().strip() == "ready"

    with registry.owned(proc):
        registry.terminate(proc)

    assert proc.returncode == -signal.SIGKILL
    proc.stdout.close()


def test_terminate_ignores_already_exited_process() -> None:
    registry = ProcessRegistry(grace_seconds=0.1)
    proc = _spawn("pass")
    proc.wait(timeout=10)

    registry.terminate(proc)

    assert proc.returncode == 0
    assert proc.stdout is not None
    proc.stdout.close()


def test_process_registered_after_terminate_all_is_stopped() -> None:
    registry = ProcessRegistry(grace_seconds=5.0)
    assert registry.terminate_all() == 0
    assert registry.closed is True

    proc = _spawn("import time; time.sleep(60)")
    with registry.owned(proc):
        assert proc.poll() == -signal.SIGTERM
    assert registry.owned_pids() == ()
    assert proc.stdout is not None
    proc.stdout.close()
