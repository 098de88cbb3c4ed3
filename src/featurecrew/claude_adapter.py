from __future__ import annotations

from collections.abc import Callable
import logging
from pathlib import Path
import subprocess
import time
import uuid

from featurecrew.agent_adapter import (
    AgentAdapter,
    AgentEmptyOutputError,
    AgentError,
    AgentExitError,
    AgentRequest,
    AgentResult,
    AgentTimeoutError,
)
from featurecrew.config import AgentConfig
from featurecrew.models import AgentRecord
from featurecrew.observability import log_event
from featurecrew.process_registry import ProcessRegistry
from featurecrew.state import StateStore


LOGGER = logging.getLogger("featurecrew.claude_adapter")
PROMPT_FILE_PREFIX = ".featurecrew-"
PROMPT_FILE_SUFFIX = "-prompt.md"


def prompt_file_name(agent_id: str) -> str:
    return f"{PROMPT_FILE_PREFIX}{agent_id}{PROMPT_FILE_SUFFIX}"


class ClaudeAdapter(AgentAdapter):
    """Runs the Claude CLI once per request with the prompt on stdin.

    The prompt is written to a file at the root of the working directory for the
    duration of the call and removed afterwards for every agent type.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        registry: ProcessRegistry,
        state: StateStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._registry = registry
        self._state = state
        self._clock = clock

    def invoke(self, request: AgentRequest) -> AgentResult:
        agent_id = f"{request.agent_type}-{uuid.uuid4().hex[:12]}"
        prompt_path = request.cwd / prompt_file_name(agent_id)
        prompt_path.write_text(request.prompt, encoding="utf-8")
        self._state.create_agent(
            AgentRecord(
                id=agent_id,
                agent_type=request.agent_type,
                status="running",
                feature_name=request.feature_name,
                issue_number=request.issue_number,
                start_time=self._clock(),
            )
        )
        log_event(
            LOGGER,
            "agent_invocation_started",
            agent_id=agent_id,
            agent_type=request.agent_type,
            issue_number=request.issue_number,
            cwd=str(request.cwd),
            prompt_chars=len(request.prompt),
        )
        try:
            result = self._run(agent_id, prompt_path, request.cwd)
        except AgentError as exc:
            self._state.update_agent(
                agent_id, status="failed", end_time=self._clock(), error=str(exc)
            )
            log_event(
                LOGGER,
                "agent_invocation_finished",
                agent_id=agent_id,
                status="failed",
                error_type=type(exc).__name__,
            )
            raise
        finally:
            _remove_prompt_file(prompt_path)

        self._state.update_agent(agent_id, status="completed", end_time=self._clock())
        log_event(
            LOGGER,
            "agent_invocation_finished",
            agent_id=agent_id,
            status="completed",
            output_chars=len(result.output),
        )
        return result

    def _run(self, agent_id: str, prompt_path: Path, cwd: Path) -> AgentResult:
        with prompt_path.open("r", encoding="utf-8") as stdin:
            proc = subprocess.Popen(
                self._config.argv,
                cwd=str(cwd),
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        with self._registry.owned(proc):
            try:
                stdout, stderr = proc.communicate(timeout=self._config.timeout_seconds)
            except subprocess.TimeoutExpired:
                self._registry.terminate(proc)
                stdout, stderr = proc.communicate()
                self._record_output(agent_id, stdout, stderr)
                raise AgentTimeoutError(
                    f"Agent {agent_id} timed out after {self._config.timeout_seconds}s",
                    agent_id=agent_id,
                ) from None

        self._record_output(agent_id, stdout, stderr)
        if proc.returncode != 0:
            raise AgentExitError(
                f"Agent {agent_id} exited with code {proc.returncode}: {stderr.strip()}",
                agent_id=agent_id,
                exit_code=proc.returncode,
                stderr=stderr,
            )
        if not stdout.strip():
            raise AgentEmptyOutputError(f"Agent {agent_id} produced no output", agent_id=agent_id)
        return AgentResult(agent_id=agent_id, output=stdout, stderr=stderr, exit_code=0)

    def _record_output(self, agent_id: str, stdout: str, stderr: str) -> None:
        lines = [line for line in stdout.splitlines() if line.strip()]
        lines.extend(f"[stderr] {line}" for line in stderr.splitlines() if line.strip())
        if lines:
            self._state.append_agent_logs(agent_id, lines)


def _remove_prompt_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except Exception as exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "prompt_file_cleanup_failed",
            path=str(path),
            error_type=type(exc).__name__,
        )
