from __future__ import annotations

import contextlib
import json
import os
import tempfile
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

import structlog

from conductor.gates.quality import QualityGateResult
from conductor.lock import pid_alive
from conductor.plan import Plan
from conductor.state.models import (
    RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    AgentResultRecord,
    PlanRecord,
    QualityResultRecord,
    RunCommand,
    RunEvent,
    RunRecord,
)

logger = structlog.get_logger(__name__)

_MUTABLE_RUN_FIELDS = frozenset(
    {"status", "review_path", "current_phase", "current_state", "counters", "ended_at"}
)


class StateStoreError(RuntimeError):
    """Raised when run-history operations fail."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RunHistoryStore:
    """Durable run history under ``<state_dir>/state``.

    Every write lands on disk before the call returns: documents are written to
    a temp file, fsynced and atomically renamed. Events and quality results are
    append-only; nothing here rewrites or deletes an existing entry.
    """

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.root = state_dir.resolve() / "state"
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.root / ".lock"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._clear_abandoned_lock():
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _clear_abandoned_lock(self) -> bool:
        try:
            holder = int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if holder == os.getpid() or pid_alive(holder):
            return False
        with contextlib.suppress(FileNotFoundError):
            self.lock_file.unlink()
        return True

    def _run_dir(self, run_id: str) -> Path:
        return self.root / "runs" / run_id

    def _read_document(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StateStoreError(f"Unreadable state document: {path}") from exc
        if not isinstance(envelope, dict) or "data" not in envelope:
            raise StateStoreError(f"Malformed state document: {path}")
        return envelope["data"]

    def _write_document(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        revision = 1
        if path.exists():
            with contextlib.suppress(OSError, json.JSONDecodeError, TypeError, ValueError):
                revision = int(json.loads(path.read_text(encoding="utf-8"))["revision"]) + 1
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": _utcnow_iso(),
            "data": data,
        }
        fd, temp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(envelope, handle, ensure_ascii=False, separators=(",", ":"))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(temp_name)
            raise

    def _update_document(self, path: Path, default: Any, updater: Callable[[Any], Any]) -> Any:
        with self._state_lock():
            updated = updater(self._read_document(path, default))
            self._write_document(path, updated)
            return updated

    def _runs(self) -> dict[str, Any]:
        runs = self._read_document(self.root / "runs.json", {})
        return runs if isinstance(runs, dict) else {}

    # Runs

    def create_run(
        self,
        plan_path: str,
        command: RunCommand,
        *,
        review_path: str | None = None,
    ) -> RunRecord:
        record = RunRecord(
            run_id=uuid4().hex[:12],
            plan_path=plan_path,
            command=command,
            status="running",
            started_at=_utcnow_iso(),
            review_path=review_path,
        )

        def _updater(runs: dict[str, Any]) -> dict[str, Any]:
            runs[record.run_id] = record.to_dict()
            return runs

        self._update_document(self.root / "runs.json", {}, _updater)
        logger.debug("run_created", run_id=record.run_id, command=command, plan_path=plan_path)
        return record

    def get_run(self, run_id: str) -> RunRecord | None:
        payload = self._runs().get(run_id)
        return RunRecord.from_dict(payload) if isinstance(payload, dict) else None

    def update_run(self, run_id: str, **changes: Any) -> RunRecord:
        unknown = set(changes) - _MUTABLE_RUN_FIELDS
        if unknown:
            raise StateStoreError(f"Unsupported run fields: {', '.join(sorted(unknown))}")
        status = changes.get("status")
        if status is not None and status not in RUN_STATUSES:
            raise StateStoreError(f"Unsupported run status: {status}")

        def _updater(runs: dict[str, Any]) -> dict[str, Any]:
            current = runs.get(run_id)
            if not isinstance(current, dict):
                raise StateStoreError(f"Unknown run: {run_id}")
            current.update(changes)
            if status in TERMINAL_RUN_STATUSES and not current.get("ended_at"):
                current["ended_at"] = _utcnow_iso()
            runs[run_id] = current
            return runs

        runs = self._update_document(self.root / "runs.json", {}, _updater)
        return RunRecord.from_dict(runs[run_id])

    def list_runs(
        self,
        *,
        plan_path: str | None = None,
        command: RunCommand | None = None,
    ) -> list[RunRecord]:
        records = [
            RunRecord.from_dict(payload)
            for payload in self._runs().values()
            if isinstance(payload, dict)
        ]
        if plan_path is not None:
            records = [record for record in records if record.plan_path == plan_path]
        if command is not None:
            records = [record for record in records if record.command == command]
        # runs.json keeps insertion order, so ties on started_at stay in creation order.
        return sorted(records, key=lambda record: record.started_at)

    def get_latest_run(
        self, plan_path: str, command: RunCommand | None = None
    ) -> RunRecord | None:
        records = self.list_runs(plan_path=plan_path, command=command)
        return records[-1] if records else None

    def get_active_run(self, plan_path: str, command: RunCommand) -> RunRecord | None:
        active = [
            record
            for record in self.list_runs(plan_path=plan_path, command=command)
            if record.is_active
        ]
        return active[-1] if active else None

    # Events

    def append_event(
        self,
        run_id: str,
        event_type: str,
        *,
        phase: str | None = None,
        iteration: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> RunEvent:
        if self.get_run(run_id) is None:
            raise StateStoreError(f"Unknown run: {run_id}")
        created: list[RunEvent] = []

        def _updater(events: list[Any]) -> list[Any]:
            event = RunEvent(
                run_id=run_id,
                seq=len(events) + 1,
                event_type=event_type,
                created_at=_utcnow_iso(),
                phase=phase,
                iteration=iteration,
                data=dict(data or {}),
            )
            created.append(event)
            return [*events, event.to_dict()]

        self._update_document(self._run_dir(run_id) / "events.json", [], _updater)
        return created[0]

    def get_events(self, run_id: str) -> list[RunEvent]:
        events = self._read_document(self._run_dir(run_id) / "events.json", [])
        return [RunEvent.from_dict(item) for item in events if isinstance(item, dict)]

    # Quality results

    def record_quality_result(
        self,
        run_id: str,
        phase: str,
        attempt: int,
        gate_result: QualityGateResult,
    ) -> QualityResultRecord:
        record = QualityResultRecord(
            run_id=run_id,
            phase=phase,
            attempt=attempt,
            passed=gate_result.passed,
            results=tuple(gate_result.results),
            created_at=_utcnow_iso(),
        )

        def _updater(entries: list[Any]) -> list[Any]:
            for entry in entries:
                if entry.get("phase") == phase and int(entry.get("attempt", -1)) == attempt:
                    raise StateStoreError(
                        f"Quality result already recorded for run {run_id} "
                        f"phase {phase} attempt {attempt}."
                    )
            return [*entries, record.to_dict()]

        self._update_document(self._run_dir(run_id) / "quality.json", [], _updater)
        return record

    def get_quality_results(
        self, run_id: str, *, phase: str | None = None
    ) -> list[QualityResultRecord]:
        entries = self._read_document(self._run_dir(run_id) / "quality.json", [])
        records = [
            QualityResultRecord.from_dict(item) for item in entries if isinstance(item, dict)
        ]
        if phase is not None:
            records = [record for record in records if record.phase == phase]
        return records

    # Agent results

    def record_agent_result(
        self,
        run_id: str,
        *,
        role: str,
        phase: str | None,
        iteration: int,
        duration_ms: int,
        exit_code: int | None,
        log_path: str | None,
        payload: dict[str, Any] | None = None,
        session_id: str | None = None,
        error: str | None = None,
    ) -> AgentResultRecord:
        created: list[AgentResultRecord] = []

        def _updater(entries: list[Any]) -> list[Any]:
            record = AgentResultRecord(
                run_id=run_id,
                seq=len(entries) + 1,
                role=role,
                phase=phase,
                iteration=iteration,
                duration_ms=duration_ms,
                exit_code=exit_code,
                log_path=log_path,
                created_at=_utcnow_iso(),
                payload=payload,
                session_id=session_id,
                error=error,
            )
            created.append(record)
            return [*entries, record.to_dict()]

        self._update_document(self._run_dir(run_id) / "agents.json", [], _updater)
        return created[0]

    def get_agent_results(self, run_id: str) -> list[AgentResultRecord]:
        entries = self._read_document(self._run_dir(run_id) / "agents.json", [])
        return [AgentResultRecord.from_dict(item) for item in entries if isinstance(item, dict)]

    # Plans

    def upsert_plan(self, plan_path: str, plan: Plan) -> PlanRecord:
        record = PlanRecord(
            plan_path=plan_path,
            title=plan.title,
            phase_count=len(plan.phases),
            completed_phases=sum(1 for phase in plan.phases if phase.is_complete),
            completion_percentage=plan.completion_percentage,
            updated_at=_utcnow_iso(),
        )

        def _updater(plans: dict[str, Any]) -> dict[str, Any]:
            plans[plan_path] = record.to_dict()
            return plans

        self._update_document(self.root / "plans.json", {}, _updater)
        return record

    def get_plan(self, plan_path: str) -> PlanRecord | None:
        plans = self._read_document(self.root / "plans.json", {})
        payload = plans.get(plan_path) if isinstance(plans, dict) else None
        return PlanRecord.from_dict(payload) if isinstance(payload, dict) else None
