"""Phase-by-phase implementation loop.

For each incomplete phase of the plan::

    implementing -> quality_gating -> reviewing -> phase_gate -> next phase
         ^               |               |
         +---- retry ----+---- changes --+

Budgets, all counted per phase unless noted:

* ``max_auto_retries``: author hard failures (timeout, bad status, non-zero
  exit, ``failed``) and reviewer failures. Reviewer change requests draw on it
  too while ``share_review_budget`` is on.
* ``max_quality_retries``: failing quality gate batches.
* ``max_auto_iterations``: author invocations across the whole run.

Exhausting any budget escalates to the human gate.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from conductor.agents.base import AgentAdapter, AgentCancellationError
from conductor.config import ConductorConfig
from conductor.gates.human import (
    EscalationEvent,
    EscalationResponse,
    HumanGate,
    PhaseSummary,
)
from conductor.gates.quality import QualityGateOptions, QualityGateResult, run_quality_gates
from conductor.lock import LockManager
from conductor.orchestrator.common import (
    RunRecorder,
    acquire_plan_lock,
    invoke_agent,
    resolve_review_path,
    start_or_resume_run,
)
from conductor.paths import canonicalize_plan_path, run_log_dir
from conductor.plan import Phase, Plan, load_plan
from conductor.protocol import (
    AUTHOR_STATUS_INSTRUCTIONS,
    REVIEWER_VERDICT_INSTRUCTIONS,
    AuthorStatus,
    ProtocolError,
    ReviewerVerdict,
    ReviewOutcome,
    format_review_items,
    parse_author_status,
    parse_reviewer_verdict,
)
from conductor.state.models import RunRecord
from conductor.state.store import RunHistoryStore

logger = structlog.get_logger(__name__)

QUALITY_FIX_PREFIX = "Quality gates failed. Fix the following issues and re-run the checks:"
_PHASE_COUNTERS = ("auto_retries", "quality_retries", "review_retries", "quality_attempt")
_RESUMABLE_STATES = ("implementing", "quality_gating", "reviewing")


@dataclass(slots=True)
class PhaseExecutionResult:
    run_id: str | None
    total_phases: int
    phases_completed: int = 0
    complete: bool = False
    escalated: bool = False
    aborted: bool = False
    failed: bool = False
    paused: bool = False
    escalations: list[EscalationEvent] = field(default_factory=list)


@dataclass(slots=True)
class _PhaseContext:
    phase: Phase
    state: str = "implementing"
    instructions: str | None = None
    commit: str | None = None
    quality: QualityGateResult | None = None
    verdict: ReviewerVerdict | None = None
    started: float = field(default_factory=time.monotonic)


class _Stop(Exception):
    """Ends the run early with the given result flags."""

    def __init__(self, **flags: bool) -> None:
        super().__init__("run stopped")
        self.flags = flags


def format_quality_failures(result: QualityGateResult) -> str:
    sections = [QUALITY_FIX_PREFIX]
    for failure in result.failures:
        location = f" (full log: {failure.output_path})" if failure.output_path else ""
        sections.append(f"\n$ {failure.command}{location}\n{failure.output}")
    return "\n".join(sections)


class PhaseExecutionLoop:
    def __init__(
        self,
        *,
        plan_path: Path,
        project_root: Path,
        author: AgentAdapter,
        reviewer: AgentAdapter,
        store: RunHistoryStore,
        locks: LockManager,
        config: ConductorConfig,
        gate: HumanGate | None = None,
        auto: bool = False,
        workdir: Path | None = None,
        skip_quality: bool = False,
        start_phase: str | None = None,
    ) -> None:
        self.plan_path = canonicalize_plan_path(plan_path)
        self.project_root = project_root.resolve()
        self.workdir = (workdir or project_root).resolve()
        self.author = author
        self.reviewer = reviewer
        self.store = store
        self.locks = locks
        self.config = config
        self.gate = gate
        self.auto = auto
        self.skip_quality = skip_quality
        self.start_phase = start_phase
        self.limits = config.limits
        self.escalations: list[EscalationEvent] = []
        self.counters: dict[str, int] = {}

    async def run(self) -> PhaseExecutionResult:
        guard = await acquire_plan_lock(self.locks, self.plan_path, self.gate, auto=self.auto)
        try:
            return await self._run_locked()
        finally:
            guard.release()

    def _select_phases(self, plan: Plan, run: RunRecord, resumed: bool) -> list[str]:
        numbers = [phase.number for phase in plan.phases]
        start = self.start_phase
        if resumed and run.current_phase in numbers:
            start = run.current_phase
        if start is not None and start not in numbers:
            raise ValueError(f"Phase {start} not found in plan.")
        begin = numbers.index(start) if start is not None else 0
        selected = []
        for phase in plan.phases[begin:]:
            if phase.is_complete and phase.number != start:
                continue
            selected.append(phase.number)
        return selected

    async def _run_locked(self) -> PhaseExecutionResult:
        reviews_dir = self.config.reviews_dir(self.project_root)
        review_path = resolve_review_path(self.store, self.plan_path, reviews_dir)
        start = await start_or_resume_run(
            self.store, self.gate, self.plan_path, "run", review_path, auto=self.auto
        )
        if start.run is None:
            return PhaseExecutionResult(run_id=None, total_phases=0, aborted=True)

        run = start.run
        review_path = Path(run.review_path) if run.review_path else review_path
        recorder = RunRecorder(self.store, run, review_path)
        log_dir = run_log_dir(self.config.state_dir(self.project_root), run.run_id)
        self.counters = dict(run.counters) if start.resumed else {}
        for name in (*_PHASE_COUNTERS, "author_invocations", "breaker_start", "phases_completed"):
            self.counters.setdefault(name, 0)
        if not start.resumed:
            self.counters["phases_completed"] = 0
            recorder.event(
                "run_started",
                plan_path=str(self.plan_path),
                review_path=str(review_path),
                workdir=str(self.workdir),
                auto=self.auto,
            )

        plan = load_plan(self.plan_path)
        self.store.upsert_plan(str(self.plan_path), plan)
        total = len(plan.phases)

        def _result(**flags: bool) -> PhaseExecutionResult:
            return PhaseExecutionResult(
                run_id=run.run_id,
                total_phases=total,
                phases_completed=self.counters["phases_completed"],
                escalations=list(self.escalations),
                **flags,
            )

        if not plan.phases:
            recorder.event("plan_invalid", reason="Plan contains no phases")
            recorder.update(status="failed", current_state="failed")
            return _result(failed=True)
        try:
            selected = self._select_phases(plan, run, start.resumed)
        except ValueError as exc:
            recorder.event("plan_invalid", reason=str(exc))
            recorder.update(status="failed", current_state="failed")
            return _result(failed=True)

        resume_state = run.current_state if start.resumed else None
        try:
            for index, number in enumerate(selected):
                phase = plan.phase(number)
                if phase is None:
                    logger.warning("phase_missing_after_reload", run_id=run.run_id, phase=number)
                    continue
                context = _PhaseContext(phase=phase)
                resuming_phase = index == 0 and start.resumed
                if resuming_phase and resume_state == "phase_complete":
                    # Approved before the interruption; only the phase gate is left.
                    context.state = "phase_complete"
                elif resuming_phase and resume_state in _RESUMABLE_STATES:
                    context.state = resume_state
                elif resuming_phase:
                    # Picking up after an escalation: fresh budgets, same attempt numbering.
                    for name in ("auto_retries", "quality_retries", "review_retries"):
                        self.counters[name] = 0
                    self.counters["breaker_start"] = self.counters["author_invocations"]
                else:
                    for name in _PHASE_COUNTERS:
                        self.counters[name] = 0
                    recorder.event("phase_started", phase=number, title=phase.title)

                if context.state != "phase_complete":
                    await self._run_phase(recorder, context, review_path, log_dir)

                self.counters["phases_completed"] += 1
                plan = load_plan(self.plan_path)
                self.store.upsert_plan(str(self.plan_path), plan)
                is_last = index == len(selected) - 1
                if not is_last:
                    decision = await self._phase_gate(recorder, context)
                    if decision == "abort":
                        raise _Stop(aborted=True)
                    if decision == "review":
                        recorder.update(
                            status="pending",
                            current_state="implementing",
                            current_phase=selected[index + 1],
                            counters=self._phase_reset_counters(),
                        )
                        recorder.event("run_paused", phase=number, next_phase=selected[index + 1])
                        return _result(paused=True)
        except _Stop as stop:
            if stop.flags.get("aborted"):
                recorder.update(status="aborted", current_state="aborted", counters=self.counters)
            return _result(**stop.flags)
        except (asyncio.CancelledError, AgentCancellationError, KeyboardInterrupt):
            recorder.event("run_cancelled")
            recorder.update(status="aborted", current_state="cancelled", counters=self.counters)
            raise

        recorder.event("run_completed", phases_completed=self.counters["phases_completed"])
        recorder.update(status="completed", current_state="completed", counters=self.counters)
        return _result(complete=True)

    def _phase_reset_counters(self) -> dict[str, int]:
        counters = dict(self.counters)
        for name in _PHASE_COUNTERS:
            counters[name] = 0
        return counters

    def _save(self, recorder: RunRecorder, context: _PhaseContext) -> None:
        recorder.save_state(context.state, self.counters, phase=context.phase.number)

    async def _run_phase(
        self,
        recorder: RunRecorder,
        context: _PhaseContext,
        review_path: Path,
        log_dir: Path,
    ) -> None:
        while True:
            self._save(recorder, context)
            if context.state == "implementing":
                await self._implement(recorder, context, log_dir)
            elif context.state == "quality_gating":
                await self._quality_gate(recorder, context, log_dir)
            elif context.state == "reviewing":
                await self._review(recorder, context, review_path, log_dir)
            elif context.state == "phase_complete":
                recorder.event(
                    "phase_complete",
                    phase=context.phase.number,
                    commit=context.commit,
                    quality_passed=context.quality.passed if context.quality else None,
                )
                return
            else:
                raise RuntimeError(f"Unknown phase state: {context.state}")

    def _consume_auto_retry(self) -> bool:
        if self.counters["auto_retries"] >= self.limits.max_auto_retries:
            return False
        self.counters["auto_retries"] += 1
        return True

    async def _implement(
        self, recorder: RunRecorder, context: _PhaseContext, log_dir: Path
    ) -> None:
        phase = context.phase
        invocations = self.counters["author_invocations"] - self.counters["breaker_start"]
        if invocations >= self.limits.max_auto_iterations:
            await self._escalate(
                recorder,
                context,
                EscalationEvent(
                    reason=(
                        f"Reached {self.limits.max_auto_iterations} author invocations "
                        "without finishing the plan"
                    ),
                    iteration=self.counters["author_invocations"],
                    phase=phase.number,
                ),
            )
            return

        self.counters["author_invocations"] += 1
        iteration = self.counters["author_invocations"]
        self._save(recorder, context)
        prompt = (
            f"Implement phase {phase.number}: {phase.title} of the plan at {self.plan_path}. "
            "Check off the items you complete in the plan and commit your work.\n"
        )
        if phase.completion_gate:
            prompt += f"\nCompletion gate: {phase.completion_gate}\n"
        if context.instructions:
            prompt += f"\n{context.instructions}\n"
        prompt += f"\n{AUTHOR_STATUS_INSTRUCTIONS}"
        call = await invoke_agent(
            self.author,
            recorder,
            role="author",
            prompt=prompt,
            workdir=self.workdir,
            log_dir=log_dir,
            iteration=iteration,
            timeout_seconds=self.config.agents.timeout_seconds,
            phase=phase.number,
            model=self.config.agents.author_model,
        )

        status: AuthorStatus | None = None
        failure = call.error
        if not call.failed and call.result is not None:
            try:
                status = parse_author_status(call.result.payload)
            except ProtocolError as exc:
                failure = f"invalid status: {exc}"
        if status is not None and status.result == "failed":
            failure = f"author reported failure: {status.reason}"

        if status is not None:
            recorder.event(
                "author_status", phase=phase.number, iteration=iteration, status=status.to_dict()
            )
        if failure is not None or status is None:
            recorder.event(
                "author_failed",
                phase=phase.number,
                iteration=iteration,
                error=failure,
                timed_out=call.timed_out,
                auto_retries=self.counters["auto_retries"],
            )
            if self._consume_auto_retry():
                return
            await self._escalate(
                recorder,
                context,
                EscalationEvent(
                    reason=(
                        f"Author failed {self.limits.max_auto_retries + 1} time(s) in a row: "
                        f"{failure}"
                    ),
                    iteration=iteration,
                    phase=phase.number,
                    log_path=str(call.log_path),
                ),
            )
            return

        if status.result == "needs_human":
            await self._escalate(
                recorder,
                context,
                EscalationEvent(
                    reason=f"Author needs human input: {status.reason}",
                    iteration=iteration,
                    phase=phase.number,
                    log_path=str(call.log_path),
                ),
            )
            return

        context.commit = status.commit or context.commit
        context.instructions = None
        if self.skip_quality or not self.config.quality.commands:
            context.state = "reviewing"
        else:
            context.state = "quality_gating"

    async def _quality_gate(
        self, recorder: RunRecorder, context: _PhaseContext, log_dir: Path
    ) -> None:
        phase = context.phase
        self.counters["quality_attempt"] += 1
        attempt = self.counters["quality_attempt"]
        self._save(recorder, context)
        quality = self.config.quality
        result = await run_quality_gates(
            list(quality.commands),
            self.workdir,
            QualityGateOptions(
                run_id=recorder.run_id,
                log_dir=log_dir,
                phase=phase.number,
                attempt=attempt,
                timeout_seconds=quality.timeout_seconds,
                grace_seconds=quality.grace_seconds,
                max_output_bytes=quality.max_output_bytes,
            ),
        )
        self.store.record_quality_result(recorder.run_id, phase.number, attempt, result)
        context.quality = result
        recorder.event(
            "quality_result",
            phase=phase.number,
            iteration=attempt,
            passed=result.passed,
            failed_commands=[failure.command for failure in result.failures],
        )
        if result.passed:
            context.state = "reviewing"
            return
        if self.counters["quality_retries"] < self.limits.max_quality_retries:
            self.counters["quality_retries"] += 1
            context.instructions = format_quality_failures(result)
            context.state = "implementing"
            return
        await self._escalate(
            recorder,
            context,
            EscalationEvent(
                reason=(
                    f"Quality gates still failing after {self.limits.max_quality_retries} "
                    "retries"
                ),
                iteration=attempt,
                phase=phase.number,
                quality_results=list(result.results),
            ),
        )

    async def _review(
        self,
        recorder: RunRecorder,
        context: _PhaseContext,
        review_path: Path,
        log_dir: Path,
    ) -> None:
        phase = context.phase
        commit = f" (commit {context.commit})" if context.commit else ""
        prompt = (
            f"Review the implementation of phase {phase.number}: {phase.title} of the plan at "
            f"{self.plan_path}{commit}. Append your review to {review_path}.\n\n"
            f"{REVIEWER_VERDICT_INSTRUCTIONS}"
        )
        iteration = self.counters["author_invocations"]
        call = await invoke_agent(
            self.reviewer,
            recorder,
            role="reviewer",
            prompt=prompt,
            workdir=self.workdir,
            log_dir=log_dir,
            iteration=iteration,
            timeout_seconds=self.config.agents.timeout_seconds,
            phase=phase.number,
            model=self.config.agents.reviewer_model,
        )
        if call.failed or call.result is None:
            outcome = ReviewOutcome.failure(call.error or "reviewer failed")
        else:
            try:
                outcome = ReviewOutcome.from_verdict(parse_reviewer_verdict(call.result.payload))
            except ProtocolError as exc:
                outcome = ReviewOutcome.failure(str(exc))
        recorder.event(
            "review_verdict",
            phase=phase.number,
            iteration=iteration,
            outcome=outcome.kind,
            verdict=outcome.verdict.to_dict() if outcome.verdict else None,
            error=outcome.error,
        )

        if outcome.kind == "approved":
            context.verdict = outcome.verdict
            context.state = "phase_complete"
            return

        if outcome.kind == "error" or outcome.verdict is None:
            if self._consume_auto_retry():
                return
            await self._escalate(
                recorder,
                context,
                EscalationEvent(
                    reason=f"Reviewer did not produce a usable verdict: {outcome.error}",
                    iteration=iteration,
                    phase=phase.number,
                    log_path=str(call.log_path),
                ),
            )
            return

        verdict = outcome.verdict
        context.verdict = verdict
        if verdict.human_required_items:
            await self._escalate(
                recorder,
                context,
                EscalationEvent(
                    reason=(
                        f"{len(verdict.human_required_items)} review item(s) require "
                        "human judgment"
                    ),
                    iteration=iteration,
                    phase=phase.number,
                    log_path=str(call.log_path),
                    items=list(verdict.items),
                    verdict=verdict,
                ),
            )
            return

        if self.limits.share_review_budget:
            consumed = self._consume_auto_retry()
        elif self.counters["review_retries"] < self.limits.max_review_iterations:
            self.counters["review_retries"] += 1
            consumed = True
        else:
            consumed = False
        if consumed:
            context.instructions = (
                "Address these review items:\n" + format_review_items(verdict.items)
            )
            context.state = "implementing"
            return
        await self._escalate(
            recorder,
            context,
            EscalationEvent(
                reason=f"Review still requesting changes for phase {phase.number}",
                iteration=iteration,
                phase=phase.number,
                log_path=str(call.log_path),
                items=list(verdict.items),
                verdict=verdict,
            ),
        )

    async def _escalate(
        self,
        recorder: RunRecorder,
        context: _PhaseContext,
        escalation: EscalationEvent,
    ) -> None:
        """Record the escalation and apply the operator's decision to ``context``.

        Raises ``_Stop`` when the run cannot continue.
        """

        self.escalations.append(escalation)
        recorder.event(
            "escalation",
            phase=escalation.phase,
            iteration=escalation.iteration,
            escalation=escalation.to_dict(),
        )
        recorder.update(
            status="escalated",
            current_state="escalated",
            current_phase=context.phase.number,
            counters=self.counters,
        )
        if self.auto or self.gate is None:
            logger.warning(
                "escalation_unattended",
                run_id=recorder.run_id,
                phase=escalation.phase,
                reason=escalation.reason,
            )
            raise _Stop(escalated=True)

        response: EscalationResponse = await self.gate.escalation(escalation)
        recorder.event(
            "human_decision",
            phase=escalation.phase,
            iteration=escalation.iteration,
            action=response.action,
            guidance=response.guidance,
        )
        if response.action == "abort":
            raise _Stop(aborted=True)
        recorder.update(status="running")
        if response.action == "override":
            context.state = "phase_complete"
            return
        for name in ("auto_retries", "quality_retries", "review_retries"):
            self.counters[name] = 0
        self.counters["breaker_start"] = self.counters["author_invocations"]
        if response.guidance:
            guidance = f"Operator guidance: {response.guidance}"
            context.instructions = (
                f"{context.instructions}\n\n{guidance}" if context.instructions else guidance
            )
        context.state = "implementing"

    async def _phase_gate(self, recorder: RunRecorder, context: _PhaseContext) -> str:
        if self.auto or self.gate is None:
            return "continue"
        summary = PhaseSummary(
            phase=context.phase.number,
            title=context.phase.title,
            commit=context.commit,
            quality_passed=context.quality.passed if context.quality else None,
            review_verdict=context.verdict.readiness if context.verdict else None,
            duration_ms=int((time.monotonic() - context.started) * 1000),
        )
        decision = await self.gate.phase_complete(summary)
        recorder.event("phase_gate", phase=context.phase.number, decision=decision)
        return decision
