"""Review loop for an implementation plan.

    reviewing --approved--> approved
    reviewing --changes requested--> drafting --complete--> reviewing
    reviewing/drafting --stuck--> escalated --human--> reviewing | drafting | approved | aborted

Each reviewer call counts as one iteration. When ``max_review_iterations``
reviews in a row request changes, the run escalates with the last verdict.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from conductor.agents.base import AgentAdapter, AgentCancellationError
from conductor.config import ConductorConfig
from conductor.gates.human import EscalationEvent, EscalationResponse, HumanGate
from conductor.lock import LockManager
from conductor.orchestrator.common import (
    RunRecorder,
    acquire_plan_lock,
    invoke_agent,
    resolve_review_path,
    start_or_resume_run,
)
from conductor.paths import canonicalize_plan_path, run_log_dir
from conductor.protocol import (
    AUTHOR_STATUS_INSTRUCTIONS,
    REVIEWER_VERDICT_INSTRUCTIONS,
    ProtocolError,
    ReviewerVerdict,
    ReviewOutcome,
    VerdictItem,
    format_review_items,
    parse_author_status,
    parse_reviewer_verdict,
)
from conductor.state.store import RunHistoryStore

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class PlanReviewResult:
    approved: bool
    review_path: Path
    run_id: str | None
    iterations: int = 0
    escalated: bool = False
    aborted: bool = False
    escalations: list[EscalationEvent] = field(default_factory=list)


class PlanReviewLoop:
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
    ) -> None:
        self.plan_path = canonicalize_plan_path(plan_path)
        self.project_root = project_root.resolve()
        self.author = author
        self.reviewer = reviewer
        self.store = store
        self.locks = locks
        self.config = config
        self.gate = gate
        self.auto = auto
        self.max_iterations = config.limits.max_review_iterations
        self.escalations: list[EscalationEvent] = []

    async def run(self) -> PlanReviewResult:
        guard = await acquire_plan_lock(self.locks, self.plan_path, self.gate, auto=self.auto)
        try:
            return await self._run_locked()
        finally:
            guard.release()

    async def _run_locked(self) -> PlanReviewResult:
        reviews_dir = self.config.reviews_dir(self.project_root)
        review_path = resolve_review_path(self.store, self.plan_path, reviews_dir)
        start = await start_or_resume_run(
            self.store, self.gate, self.plan_path, "plan-review", review_path, auto=self.auto
        )
        if start.run is None:
            return PlanReviewResult(
                approved=False, review_path=review_path, run_id=None, aborted=True
            )

        run = start.run
        review_path = Path(run.review_path) if run.review_path else review_path
        recorder = RunRecorder(self.store, run, review_path)
        log_dir = run_log_dir(self.config.state_dir(self.project_root), run.run_id)

        iteration = run.counter("iteration") if start.resumed else 0
        window_start = run.counter("window_start") if start.resumed else 0
        if start.resumed and run.current_state == "escalated":
            window_start = iteration
        if not start.resumed:
            recorder.event(
                "run_started",
                plan_path=str(self.plan_path),
                review_path=str(review_path),
                auto=self.auto,
            )

        state = "reviewing"
        pending_items: list[VerdictItem] = []
        guidance: str | None = None

        def _counters() -> dict[str, int]:
            return {"iteration": iteration, "window_start": window_start}

        def _result(**flags: bool) -> PlanReviewResult:
            return PlanReviewResult(
                review_path=review_path,
                run_id=run.run_id,
                iterations=iteration,
                escalations=list(self.escalations),
                **flags,
            )

        try:
            while True:
                if state == "reviewing":
                    iteration += 1
                    recorder.save_state("reviewing", _counters())
                    outcome, log_path = await self._review(
                        recorder, review_path, log_dir, iteration
                    )
                    recorder.event(
                        "review_verdict",
                        iteration=iteration,
                        outcome=outcome.kind,
                        verdict=outcome.verdict.to_dict() if outcome.verdict else None,
                        error=outcome.error,
                    )
                    if outcome.kind == "approved":
                        state = "approved"
                        continue

                    verdict = outcome.verdict
                    if outcome.kind == "error" or verdict is None:
                        escalation = EscalationEvent(
                            reason=f"Reviewer did not produce a usable verdict: {outcome.error}",
                            iteration=iteration,
                            log_path=str(log_path),
                            audit_path=str(review_path),
                        )
                    elif verdict.human_required_items:
                        escalation = EscalationEvent(
                            reason=(
                                f"{len(verdict.human_required_items)} review item(s) "
                                "require human judgment"
                            ),
                            iteration=iteration,
                            log_path=str(log_path),
                            audit_path=str(review_path),
                            items=list(verdict.items),
                            verdict=verdict,
                        )
                    elif iteration - window_start >= self.max_iterations:
                        escalation = EscalationEvent(
                            reason=(
                                f"Plan not approved after {self.max_iterations} review iterations"
                            ),
                            iteration=iteration,
                            log_path=str(log_path),
                            audit_path=str(review_path),
                            items=list(verdict.items),
                            verdict=verdict,
                        )
                    else:
                        pending_items = list(verdict.items)
                        guidance = None
                        state = "drafting"
                        continue

                    response = await self._escalate(recorder, escalation, _counters())
                    if response is None:
                        return _result(approved=False, escalated=True)
                    if response.action == "abort":
                        recorder.update(status="aborted", current_state="aborted")
                        return _result(approved=False, aborted=True)
                    if response.action == "override":
                        state = "approved"
                        continue
                    window_start = iteration
                    guidance = response.guidance
                    if verdict is not None and verdict.items:
                        pending_items = list(verdict.items)
                        state = "drafting"
                    else:
                        state = "reviewing"
                    continue

                if state == "drafting":
                    recorder.save_state("drafting", _counters())
                    failure, log_path = await self._revise(
                        recorder, review_path, log_dir, iteration, pending_items, guidance
                    )
                    if failure is None:
                        state = "reviewing"
                        continue
                    escalation = EscalationEvent(
                        reason=failure,
                        iteration=iteration,
                        log_path=str(log_path),
                        audit_path=str(review_path),
                        items=pending_items,
                    )
                    response = await self._escalate(recorder, escalation, _counters())
                    if response is None:
                        return _result(approved=False, escalated=True)
                    if response.action == "abort":
                        recorder.update(status="aborted", current_state="aborted")
                        return _result(approved=False, aborted=True)
                    if response.action == "override":
                        state = "approved"
                        continue
                    window_start = iteration
                    guidance = response.guidance
                    continue

                recorder.event("plan_approved", iteration=iteration)
                recorder.update(status="completed", current_state="approved", counters=_counters())
                return _result(approved=True)
        except (asyncio.CancelledError, AgentCancellationError, KeyboardInterrupt):
            recorder.event("run_cancelled", iteration=iteration)
            recorder.update(status="aborted", current_state="cancelled", counters=_counters())
            raise

    async def _review(
        self,
        recorder: RunRecorder,
        review_path: Path,
        log_dir: Path,
        iteration: int,
    ) -> tuple[ReviewOutcome, Path]:
        prompt = (
            f"Review the implementation plan at {self.plan_path}. "
            f"Append your review to {review_path}.\n\n{REVIEWER_VERDICT_INSTRUCTIONS}"
        )
        call = await invoke_agent(
            self.reviewer,
            recorder,
            role="reviewer",
            prompt=prompt,
            workdir=self.project_root,
            log_dir=log_dir,
            iteration=iteration,
            timeout_seconds=self.config.agents.timeout_seconds,
            model=self.config.agents.reviewer_model,
        )
        if call.failed or call.result is None:
            return ReviewOutcome.failure(call.error or "reviewer failed"), call.log_path
        try:
            verdict: ReviewerVerdict = parse_reviewer_verdict(call.result.payload)
        except ProtocolError as exc:
            return ReviewOutcome.failure(str(exc)), call.log_path
        return ReviewOutcome.from_verdict(verdict), call.log_path

    async def _revise(
        self,
        recorder: RunRecorder,
        review_path: Path,
        log_dir: Path,
        iteration: int,
        items: list[VerdictItem],
        guidance: str | None,
    ) -> tuple[str | None, Path]:
        """Ask the author to address review items; returns a failure reason or None."""
        prompt = (
            f"Revise the implementation plan at {self.plan_path} to address the review "
            f"in {review_path}:\n{format_review_items(items)}\n"
        )
        if guidance:
            prompt += f"\nOperator guidance: {guidance}\n"
        prompt += f"\n{AUTHOR_STATUS_INSTRUCTIONS}"
        call = await invoke_agent(
            self.author,
            recorder,
            role="author",
            prompt=prompt,
            workdir=self.project_root,
            log_dir=log_dir,
            iteration=iteration,
            timeout_seconds=self.config.agents.timeout_seconds,
            model=self.config.agents.author_model,
        )
        if call.failed or call.result is None:
            reason = f"Author failed to revise the plan: {call.error}"
            recorder.event("author_failed", iteration=iteration, error=call.error)
            return reason, call.log_path
        try:
            status = parse_author_status(call.result.payload)
        except ProtocolError as exc:
            recorder.event("author_failed", iteration=iteration, error=str(exc))
            return f"Author returned an invalid status: {exc}", call.log_path
        recorder.event("author_status", iteration=iteration, status=status.to_dict())
        if status.result == "complete":
            return None, call.log_path
        return f"Author reported {status.result}: {status.reason}", call.log_path

    async def _escalate(
        self,
        recorder: RunRecorder,
        escalation: EscalationEvent,
        counters: dict[str, int],
    ) -> EscalationResponse | None:
        """Record an escalation and ask for a decision; None leaves the run escalated."""
        self.escalations.append(escalation)
        recorder.event(
            "escalation", iteration=escalation.iteration, escalation=escalation.to_dict()
        )
        recorder.update(status="escalated", current_state="escalated", counters=counters)
        if self.auto or self.gate is None:
            logger.warning(
                "escalation_unattended", run_id=recorder.run_id, reason=escalation.reason
            )
            return None
        response = await self.gate.escalation(escalation)
        recorder.event(
            "human_decision",
            iteration=escalation.iteration,
            action=response.action,
            guidance=response.guidance,
        )
        if response.action != "abort":
            recorder.update(status="running")
        return response
