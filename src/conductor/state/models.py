from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from conductor.gates.quality import QualityCommandResult

RunStatus = Literal["pending", "running", "escalated", "completed", "failed", "aborted"]
RunCommand = Literal["plan", "plan-review", "run"]

RUN_STATUSES: tuple[str, ...] = (
    "pending",
    "running",
    "escalated",
    "completed",
    "failed",
    "aborted",
)
ACTIVE_RUN_STATUSES: tuple[str, ...] = ("pending", "running", "escalated")
TERMINAL_RUN_STATUSES: tuple[str, ...] = ("completed", "failed", "aborted")


@dataclass(slots=True)
class RunRecord:
    run_id: str
    plan_path: str
    command: RunCommand
    status: RunStatus
    started_at: str
    review_path: str | None = None
    ended_at: str | None = None
    current_phase: str | None = None
    current_state: str | None = None
    counters: dict[str, int] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def counter(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan_path": self.plan_path,
            "command": self.command,
            "status": self.status,
            "started_at": self.started_at,
            "review_path": self.review_path,
            "ended_at": self.ended_at,
            "current_phase": self.current_phase,
            "current_state": self.current_state,
            "counters": dict(self.counters),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunRecord:
        return cls(
            run_id=str(payload["run_id"]),
            plan_path=str(payload["plan_path"]),
            command=payload.get("command", "run"),
            status=payload.get("status", "pending"),
            started_at=str(payload.get("started_at", "")),
            review_path=payload.get("review_path"),
            ended_at=payload.get("ended_at"),
            current_phase=payload.get("current_phase"),
            current_state=payload.get("current_state"),
            counters={
                str(key): int(value) for key, value in (payload.get("counters") or {}).items()
            },
        )


@dataclass(frozen=True, slots=True)
class RunEvent:
    run_id: str
    seq: int
    event_type: str
    created_at: str
    phase: str | None = None
    iteration: int | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "seq": self.seq,
            "event_type": self.event_type,
            "created_at": self.created_at,
            "phase": self.phase,
            "iteration": self.iteration,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunEvent:
        return cls(
            run_id=str(payload["run_id"]),
            seq=int(payload["seq"]),
            event_type=str(payload["event_type"]),
            created_at=str(payload.get("created_at", "")),
            phase=payload.get("phase"),
            iteration=payload.get("iteration"),
            data=dict(payload.get("data") or {}),
        )


@dataclass(frozen=True, slots=True)
class QualityResultRecord:
    run_id: str
    phase: str
    attempt: int
    passed: bool
    results: tuple[QualityCommandResult, ...]
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "phase": self.phase,
            "attempt": self.attempt,
            "passed": self.passed,
            "results": [result.to_dict() for result in self.results],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QualityResultRecord:
        return cls(
            run_id=str(payload["run_id"]),
            phase=str(payload["phase"]),
            attempt=int(payload["attempt"]),
            passed=bool(payload.get("passed")),
            results=tuple(
                QualityCommandResult.from_dict(item) for item in payload.get("results", [])
            ),
            created_at=str(payload.get("created_at", "")),
        )


@dataclass(frozen=True, slots=True)
class AgentResultRecord:
    run_id: str
    seq: int
    role: str
    phase: str | None
    iteration: int
    duration_ms: int
    exit_code: int | None
    log_path: str | None
    created_at: str
    payload: dict[str, Any] | None = None
    session_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "seq": self.seq,
            "role": self.role,
            "phase": self.phase,
            "iteration": self.iteration,
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "log_path": self.log_path,
            "created_at": self.created_at,
            "payload": self.payload,
            "session_id": self.session_id,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentResultRecord:
        return cls(
            run_id=str(payload["run_id"]),
            seq=int(payload["seq"]),
            role=str(payload["role"]),
            phase=payload.get("phase"),
            iteration=int(payload.get("iteration", 0)),
            duration_ms=int(payload.get("duration_ms", 0)),
            exit_code=payload.get("exit_code"),
            log_path=payload.get("log_path"),
            created_at=str(payload.get("created_at", "")),
            payload=payload.get("payload"),
            session_id=payload.get("session_id"),
            error=payload.get("error"),
        )


@dataclass(frozen=True, slots=True)
class PlanRecord:
    plan_path: str
    title: str
    phase_count: int
    completed_phases: int
    completion_percentage: int
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_path": self.plan_path,
            "title": self.title,
            "phase_count": self.phase_count,
            "completed_phases": self.completed_phases,
            "completion_percentage": self.completion_percentage,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PlanRecord:
        return cls(
            plan_path=str(payload["plan_path"]),
            title=str(payload.get("title", "")),
            phase_count=int(payload.get("phase_count", 0)),
            completed_phases=int(payload.get("completed_phases", 0)),
            completion_percentage=int(payload.get("completion_percentage", 0)),
            updated_at=str(payload.get("updated_at", "")),
        )
