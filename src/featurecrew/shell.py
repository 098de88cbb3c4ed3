from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
import logging
from pathlib import Path
import subprocess
import threading

from featurecrew.observability import format_event
from featurecrew.process_registry import ProcessRegistry


LOGGER = logging.getLogger("featurecrew.shell")


class CommandError(RuntimeError):
    """A git/gh (or other) subprocess exited non-zero or ran past its timeout."""

    def __init__(
        self,
        message: str,
        *,
        argv: tuple[str, ...] = (),
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = argv
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"

    @classmethod
    def for_process(
        cls, argv: Sequence[str], *, exit_code: int | None, stdout: str, stderr: str
    ) -> CommandError:
        status = "timed out" if exit_code is None else f"exit {exit_code}"
        return cls(
            f"Command failed ({status}): {' '.join(argv)}\n"
            f"--- stdout\n{stdout}\n--- stderr\n{stderr}",
            argv=tuple(argv),
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )


_owner_lock = threading.Lock()
_owner: ProcessRegistry | None = None


@contextmanager
def owned_by(registry: ProcessRegistry) -> Iterator[ProcessRegistry]:
    """Register every ``run`` subprocess started in this process with ``registry``.

    Commands then start in their own session so that ``registry.terminate_all`` can stop
    a stalled git or gh call along with its children.
    """
    global _owner
    with _owner_lock:
        previous, _owner = _owner, registry
    try:
        yield registry
    finally:
        with _owner_lock:
            _owner = previous


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout_seconds: float | None = None,
) -> str:
    """Run ``argv`` and return its stdout; raise ``CommandError`` on failure when ``check``."""
    registry = _owner
    try:
        if registry is None:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                input=input_text,
                text=True,
                capture_output=True,
                check=False,
                timeout=timeout_seconds,
            )
        else:
            proc = _run_registered(
                argv, registry, cwd=cwd, input_text=input_text, timeout_seconds=timeout_seconds
            )
    except subprocess.TimeoutExpired as exc:
        error = CommandError.for_process(
            argv,
            exit_code=None,
            stdout=_as_text(exc.stdout),
            stderr=_as_text(exc.stderr),
        )
        _log_failure(error)
        raise error from exc

    if check and proc.returncode != 0:
        error = CommandError.for_process(
            argv, exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr
        )
        _log_failure(error)
        raise error
    return proc.stdout


def _run_registered(
    argv: list[str],
    registry: ProcessRegistry,
    *,
    cwd: Path | None,
    input_text: str | None,
    timeout_seconds: float | None,
) -> subprocess.CompletedProcess[str]:
    proc = subprocess.Popen(
        argv,
        cwd=str(cwd) if cwd else None,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    with registry.owned(proc):
        try:
            stdout, stderr = proc.communicate(input=input_text, timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            registry.terminate(proc)
            stdout, stderr = proc.communicate()
            raise subprocess.TimeoutExpired(
                argv, timeout_seconds or 0.0, output=stdout, stderr=stderr
            ) from None
    return subprocess.CompletedProcess(argv, proc.returncode, stdout, stderr)


def _log_failure(error: CommandError) -> None:
    fields = {
        "command": " ".join(error.argv),
        "exit_code": error.exit_code,
        "stderr": _summarize_stream(error.stderr),
        "stdout": _summarize_stream(error.stdout),
    }
    LOGGER.error(format_event("command_failed", fields), extra={"event": "command_failed"})


def _summarize_stream(text: str, *, limit: int = 200) -> str:
    flat = text.strip().replace("\n", "\\n")
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
