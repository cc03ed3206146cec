from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

AgentRole = Literal["author", "reviewer"]


class AgentExecutionError(RuntimeError):
    """Raised when an agent invocation cannot produce a result."""

    def __init__(
        self,
        message: str,
        *,
        agent: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.agent = agent
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentExecutionError):
    """Raised when an agent exceeds its configured timeout."""


class AgentCancellationError(AgentExecutionError):
    """Raised when an agent invocation is interrupted by the operator."""

    def __init__(self, message: str = "Agent invocation cancelled.", **kwargs: Any) -> None:
        kwargs.setdefault("retriable", False)
        super().__init__(message, **kwargs)


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process cannot be started."""


@dataclass(slots=True)
class InvokeOptions:
    role: AgentRole
    prompt: str
    workdir: Path
    log_path: Path | None = None
    timeout_seconds: float = 600.0
    model: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentResult:
    """What came back from one agent run.

    ``payload`` is the structured JSON object the agent emitted, if any; it is
    validated by the caller, not here.
    """

    output: str
    duration_ms: int
    payload: dict[str, Any] | None = None
    exit_code: int | None = 0
    session_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


class AgentAdapter(ABC):
    @abstractmethod
    async def invoke(self, options: InvokeOptions) -> AgentResult:
        """Run the agent once.

        Raises ``AgentTimeoutError`` when the timeout elapses and
        ``AgentCancellationError`` when interrupted; an unsuccessful run is a
        result with a non-zero ``exit_code`` or an ``error``.
        """
