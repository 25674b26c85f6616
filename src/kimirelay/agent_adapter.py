from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AgentResult:
    output: str
    exit_code: int


class AgentError(RuntimeError):
    """Base class for coding-agent invocation failures."""


class AgentTimeoutError(AgentError):
    """Agent did not finish within the configured timeout and was terminated."""


class AgentExitError(AgentError):
    """Agent process exited with a non-zero status."""

    def __init__(self, message: str, *, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class AgentSpawnError(AgentError):
    """Agent executable could not be started."""


class AgentAdapter(ABC):
    @abstractmethod
    def invoke(self, *, prompt: str, session_id: str, cwd: Path) -> AgentResult:
        """Run the agent on `cwd` and record the exchange under `session_id`."""
