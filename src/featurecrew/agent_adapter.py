from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from featurecrew.models import AgentType


@dataclass(frozen=True)
class AgentRequest:
    agent_type: AgentType
    prompt: str
    cwd: Path
    feature_name: str | None = None
    issue_number: int | None = None


@dataclass(frozen=True)
class AgentResult:
    agent_id: str
    output: str
    stderr: str
    exit_code: int


class AgentError(RuntimeError):
    def __init__(self, message: str, *, agent_id: str) -> None:
        super().__init__(message)
        self.agent_id = agent_id


class AgentTimeoutError(AgentError):
    pass


class AgentExitError(AgentError):
    def __init__(self, message: str, *, agent_id: str, exit_code: int, stderr: str) -> None:
        super().__init__(message, agent_id=agent_id)
        self.exit_code = exit_code
        self.stderr = stderr


class AgentEmptyOutputError(AgentError):
    pass


class AgentAdapter(ABC):
    @abstractmethod
    def invoke(self, request: AgentRequest) -> AgentResult:
        """Run one agent turn in ``request.cwd`` and return its accumulated output.

        Raises an ``AgentError`` subclass on timeout, non-zero exit, or empty output.
        """
