from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
import logging
import os
import signal
import subprocess
import threading

from featurecrew.observability import log_event


LOGGER = logging.getLogger("featurecrew.process_registry")


class ProcessRegistry:
    """Subprocesses spawned by this run, and the only ones cancellation may signal.

    Children are expected to start in their own session so that their process group
    can be signalled without touching ours. Process ids in ``protected_pids`` (and
    this interpreter's own pid) are never signalled.
    """

    def __init__(self, *, protected_pids: Iterable[int] = (), grace_seconds: float = 10.0) -> None:
        self._protected = frozenset(protected_pids) | {os.getpid()}
        self._grace_seconds = grace_seconds
        self._lock = threading.Lock()
        self._owned: dict[int, subprocess.Popen[str]] = {}
        self._closed = False

    @property
    def protected_pids(self) -> frozenset[int]:
        return self._protected

    def is_protected(self, pid: int) -> bool:
        return pid in self._protected

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._owned[proc.pid] = proc
            closed = self._closed
        if closed:
            # Started after terminate_all; stop it before the caller can block on it.
            log_event(LOGGER, "process_started_after_terminate", pid=proc.pid)
            self.terminate(proc)

    def unregister(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._owned.pop(proc.pid, None)

    @contextmanager
    def owned(self, proc: subprocess.Popen[str]) -> Iterator[subprocess.Popen[str]]:
        self.register(proc)
        try:
            yield proc
        finally:
            self.unregister(proc)

    def owned_pids(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._owned))

    def terminate(self, proc: subprocess.Popen[str]) -> None:
        if proc.poll() is not None:
            return
        if self.is_protected(proc.pid):
            log_event(LOGGER, "process_kill_skipped_protected", pid=proc.pid)
            return

        log_event(LOGGER, "process_terminating", pid=proc.pid, grace_seconds=self._grace_seconds)
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self._grace_seconds)
            return
        except subprocess.TimeoutExpired:
            pass

        log_event(LOGGER, "process_kill_escalated", pid=proc.pid)
        self._signal(proc, signal.SIGKILL)
        try:
            proc.wait(timeout=self._grace_seconds)
        except subprocess.TimeoutExpired:
            log_event(LOGGER, "process_kill_unconfirmed", pid=proc.pid)

    def terminate_all(self) -> int:
        """Stop every owned process; processes registered afterwards are stopped on arrival."""
        with self._lock:
            self._closed = True
            procs = list(self._owned.values())
        for proc in procs:
            self.terminate(proc)
        log_event(LOGGER, "process_registry_terminated", count=len(procs))
        return len(procs)

    def _signal(self, proc: subprocess.Popen[str], sig: signal.Signals) -> None:
        try:
            pgid = os.getpgid(proc.pid)
        except ProcessLookupError:
            return
        try:
            if pgid != os.getpgrp() and not self.is_protected(pgid):
                os.killpg(pgid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            return
