from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from conductor.agents.base import (
    AgentAdapter,
    AgentCancellationError,
    AgentExecutionError,
    AgentResult,
    AgentRole,
    AgentTimeoutError,
    InvokeOptions,
)
from conductor.audit import append_audit_record, build_audit_record
from conductor.gates.human import HumanGate
from conductor.lock import (
    LockContentionError,
    LockGuard,
    LockInfo,
    LockManager,
    LockRefusedError,
)
from conductor.state.models import RunCommand, RunEvent, RunRecord
from conductor.state.store import RunHistoryStore

logger = structlog.get_logger(__name__)


class RunRecorder:
    """Writes each transition to the run history, then to the audit trail.

    The store write must succeed before control moves on. An audit write that
    fails is logged and does not stop the run.
    """

    def __init__(self, store: RunHistoryStore, run: RunRecord, audit_path: Path | None) -> None:
        self.store = store
        self.run = run
        self.audit_path = audit_path

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def event(
        self,
        event_type: str,
        *,
        phase: str | None = None,
        iteration: int | None = None,
        **data: Any,
    ) -> RunEvent:
        event = self.store.append_event(
            self.run_id, event_type, phase=phase, iteration=iteration, data=data
        )
        if self.audit_path is not None:
            record = build_audit_record(
                event_type,
                run_id=self.run_id,
                seq=event.seq,
                phase=phase,
                iteration=iteration,
                **data,
            )
            try:
                append_audit_record(self.audit_path, record)
            except OSError as exc:
                logger.warning(
                    "audit_append_failed",
                    run_id=self.run_id,
                    path=str(self.audit_path),
                    error=str(exc),
                )
        logger.info(event_type, run_id=self.run_id, seq=event.seq, phase=phase, iteration=iteration)
        return event

    def update(self, **changes: Any) -> RunRecord:
        self.run = self.store.update_run(self.run_id, **changes)
        return self.run

    def save_state(self, state: str, counters: dict[str, int], *, phase: str | None = None) -> None:
        changes: dict[str, Any] = {"current_state": state, "counters": dict(counters)}
        if phase is not None:
            changes["current_phase"] = phase
        self.update(**changes)


async def acquire_plan_lock(
    locks: LockManager,
    plan_path: Path,
    gate: HumanGate | None,
    *,
    auto: bool,
) -> LockGuard:
    """Take the plan lock, asking the operator before stealing a stale one."""
    status = locks.is_locked(plan_path)
    if status.locked and status.info is not None and status.info.pid != os.getpid():
        if not status.stale:
            raise LockContentionError(plan_path, status.info)
        if not auto and gate is not None and not await gate.stale_lock(status.info):
            raise LockRefusedError(plan_path, status.info)

    result = locks.acquire(plan_path)
    if not result.acquired or result.guard is None:
        holder = result.existing_lock or locks.is_locked(plan_path).info
        if holder is None:
            holder = LockInfo(pid=-1, started_at="", plan_path=str(plan_path))
        raise LockContentionError(plan_path, holder)
    if result.stale and result.existing_lock is not None:
        logger.warning(
            "stale_lock_taken_over",
            plan_path=str(plan_path),
            previous_pid=result.existing_lock.pid,
        )
    return result.guard


def _is_strictly_inside(path: Path, directory: Path) -> bool:
    try:
        relative = path.resolve().relative_to(directory.resolve())
    except ValueError:
        return False
    return relative != Path(".")


def resolve_review_path(
    store: RunHistoryStore,
    plan_path: Path,
    reviews_dir: Path,
    *,
    today: str | None = None,
) -> Path:
    """Reuse the review document of earlier runs on this plan when it is still
    inside the reviews directory; otherwise name a new one by date."""
    latest = store.get_latest_run(str(plan_path))
    if latest is not None and latest.review_path:
        candidate = Path(latest.review_path)
        if _is_strictly_inside(candidate, reviews_dir):
            return candidate
        logger.warning(
            "review_path_outside_reviews_dir",
            review_path=latest.review_path,
            reviews_dir=str(reviews_dir),
        )
    date = today or datetime.now(UTC).strftime("%Y-%m-%d")
    return reviews_dir / f"{date}-{plan_path.stem}-review.md"


@dataclass(slots=True)
class RunStart:
    run: RunRecord | None
    resumed: bool = False

    @property
    def aborted(self) -> bool:
        return self.run is None


async def start_or_resume_run(
    store: RunHistoryStore,
    gate: HumanGate | None,
    plan_path: Path,
    command: RunCommand,
    review_path: Path,
    *,
    auto: bool,
) -> RunStart:
    """Pick up an interrupted run of the same command or start a new one.

    Unattended runs always resume; otherwise the operator chooses.
    """

    active = store.get_active_run(str(plan_path), command)
    if active is not None:
        decision = "resume" if auto or gate is None else await gate.resume(active)
        if decision == "abort":
            return RunStart(run=None)
        if decision == "resume":
            run = store.update_run(active.run_id, status="running")
            store.append_event(
                run.run_id,
                "run_resumed",
                phase=run.current_phase,
                data={"state": run.current_state, "counters": dict(run.counters)},
            )
            return RunStart(run=run, resumed=True)
        store.update_run(active.run_id, status="aborted")
        store.append_event(active.run_id, "run_superseded", data={"reason": "start-fresh"})

    run = store.create_run(str(plan_path), command, review_path=str(review_path))
    return RunStart(run=run)


@dataclass(slots=True)
class AgentCall:
    result: AgentResult | None
    log_path: Path
    error: str | None = None
    timed_out: bool = False

    @property
    def failed(self) -> bool:
        return self.result is None or not self.result.ok


async def invoke_agent(
    adapter: AgentAdapter,
    recorder: RunRecorder,
    *,
    role: AgentRole,
    prompt: str,
    workdir: Path,
    log_dir: Path,
    iteration: int,
    timeout_seconds: float,
    phase: str | None = None,
    model: str | None = None,
) -> AgentCall:
    """Run one agent turn and record it.

    Timeouts and execution failures come back as a failed ``AgentCall``;
    cancellation propagates.
    """

    seq = len(recorder.store.get_agent_results(recorder.run_id)) + 1
    label = f"phase{phase}" if phase is not None else "plan"
    log_path = log_dir / f"agent-{seq:03d}-{role}-{label}.log"
    options = InvokeOptions(
        role=role,
        prompt=prompt,
        workdir=workdir,
        log_path=log_path,
        timeout_seconds=timeout_seconds,
        model=model or None,
    )
    call: AgentCall
    try:
        result = await adapter.invoke(options)
    except AgentCancellationError:
        raise
    except AgentTimeoutError as exc:
        call = AgentCall(result=None, log_path=log_path, error=str(exc), timed_out=True)
    except AgentExecutionError as exc:
        call = AgentCall(result=None, log_path=log_path, error=str(exc))
    else:
        error = result.error
        if error is None and result.exit_code != 0:
            error = f"{role} exited with code {result.exit_code}"
        call = AgentCall(result=result, log_path=log_path, error=error)

    recorder.store.record_agent_result(
        recorder.run_id,
        role=role,
        phase=phase,
        iteration=iteration,
        duration_ms=call.result.duration_ms if call.result else 0,
        exit_code=call.result.exit_code if call.result else None,
        log_path=str(log_path),
        payload=call.result.payload if call.result else None,
        session_id=call.result.session_id if call.result else None,
        error=call.error,
    )
    return call
