from conductor.agents.base import (
    AgentAdapter,
    AgentCancellationError,
    AgentExecutionError,
    AgentProcessError,
    AgentResult,
    AgentTimeoutError,
    InvokeOptions,
)
from conductor.agents.command import CommandAgentAdapter

__all__ = [
    "AgentAdapter",
    "AgentCancellationError",
    "AgentExecutionError",
    "AgentProcessError",
    "AgentResult",
    "AgentTimeoutError",
    "CommandAgentAdapter",
    "InvokeOptions",
]
