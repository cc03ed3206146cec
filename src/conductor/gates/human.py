from __future__ import annotations

import asyncio
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

import click

from conductor.gates.quality import QualityCommandResult
from conductor.lock import LockInfo
from conductor.protocol import ReviewerVerdict, VerdictItem
from conductor.state.models import RunRecord

EscalationAction = Literal["retry", "override", "abort"]
PhaseGateDecision = Literal["continue", "review", "abort"]
ResumeDecision = Literal["resume", "start-fresh", "abort"]

ESCALATION_OPTIONS: tuple[EscalationAction, ...] = ("retry", "override", "abort")


@dataclass(slots=True)
class EscalationEvent:
    reason: str
    iteration: int
    phase: str | None = None
    log_path: str | None = None
    audit_path: str | None = None
    options: tuple[EscalationAction, ...] = ESCALATION_OPTIONS
    items: list[VerdictItem] = field(default_factory=list)
    quality_results: list[QualityCommandResult] = field(default_factory=list)
    verdict: ReviewerVerdict | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "iteration": self.iteration,
            "phase": self.phase,
            "log_path": self.log_path,
            "audit_path": self.audit_path,
            "options": list(self.options),
            "items": [item.to_dict() for item in self.items],
            "quality_results": [result.to_dict() for result in self.quality_results],
            "verdict": self.verdict.to_dict() if self.verdict else None,
        }


@dataclass(frozen=True, slots=True)
class EscalationResponse:
    action: EscalationAction
    guidance: str | None = None


@dataclass(slots=True)
class PhaseSummary:
    phase: str
    title: str
    commit: str | None = None
    quality_passed: bool | None = None
    review_verdict: str | None = None
    duration_ms: int | None = None


class HumanGate(ABC):
    """Decisions the loops cannot make on their own."""

    @abstractmethod
    async def escalation(self, event: EscalationEvent) -> EscalationResponse:
        """Choose how to resolve an escalation."""

    @abstractmethod
    async def phase_complete(self, summary: PhaseSummary) -> PhaseGateDecision:
        """Confirm moving past a completed phase."""

    @abstractmethod
    async def resume(self, run: RunRecord) -> ResumeDecision:
        """Decide what to do with an interrupted run."""

    @abstractmethod
    async def stale_lock(self, info: LockInfo) -> bool:
        """Return True to take over a lock left by a dead process."""


def _format_duration(duration_ms: int) -> str:
    seconds = round(duration_ms / 1000)
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m {seconds}s" if minutes else f"{seconds}s"


class TerminalHumanGate(HumanGate):
    """Prompts on the controlling terminal; aborts when stdin is not a TTY."""

    def __init__(self, *, interactive: bool | None = None) -> None:
        self.interactive = sys.stdin.isatty() if interactive is None else interactive

    async def _choose(self, prompt: str, choices: dict[str, str]) -> str | None:
        if not self.interactive:
            click.echo("  Non-interactive mode detected, aborting.", err=True)
            return None
        answer = await asyncio.to_thread(
            click.prompt,
            prompt,
            type=click.Choice(sorted(choices), case_sensitive=False),
            show_choices=True,
        )
        return choices.get(str(answer).lower())

    async def escalation(self, event: EscalationEvent) -> EscalationResponse:
        click.echo()
        click.echo("  === Escalation: human review required ===")
        click.echo(f"  Reason: {event.reason}")
        if event.phase is not None:
            click.echo(f"  Phase: {event.phase}  Iteration: {event.iteration}")
        for item in event.items:
            click.echo(f"    - [{item.id}] {item.title}: {item.reason}")
        for result in event.quality_results:
            if not result.passed:
                click.echo(f"    - quality gate failed: {result.command}")
        if event.log_path:
            click.echo(f"  Agent log: {event.log_path}")
        click.echo()
        choice = await self._choose(
            "  Choice (c = retry with guidance, a = accept as is, q = abort)",
            {"c": "retry", "a": "override", "q": "abort"},
        )
        if choice == "retry":
            guidance = await asyncio.to_thread(
                click.prompt, "  Guidance (optional)", default="", show_default=False
            )
            return EscalationResponse(action="retry", guidance=guidance.strip() or None)
        if choice == "override":
            return EscalationResponse(action="override")
        return EscalationResponse(action="abort")

    async def phase_complete(self, summary: PhaseSummary) -> PhaseGateDecision:
        click.echo()
        click.echo(f"  Phase {summary.phase}: {summary.title} complete")
        if summary.commit:
            click.echo(f"  Commit: {summary.commit[:8]}")
        if summary.quality_passed is None:
            click.echo("  Quality gates: SKIPPED")
        else:
            click.echo(f"  Quality gates: {'PASSED' if summary.quality_passed else 'FAILED'}")
        if summary.review_verdict:
            click.echo(f"  Review verdict: {summary.review_verdict}")
        if summary.duration_ms is not None:
            click.echo(f"  Duration: {_format_duration(summary.duration_ms)}")
        choice = await self._choose(
            "  Choice (c = continue, r = stop for review, q = abort)",
            {"c": "continue", "r": "review", "q": "abort"},
        )
        if choice == "continue":
            return "continue"
        if choice == "review":
            return "review"
        return "abort"

    async def resume(self, run: RunRecord) -> ResumeDecision:
        click.echo()
        click.echo(
            f"  Found interrupted run {run.run_id[:8]} at phase {run.current_phase or '-'}, "
            f"state {run.current_state or '-'}."
        )
        choice = await self._choose(
            "  Choice (r = resume, n = start fresh, q = abort)",
            {"r": "resume", "n": "start-fresh", "q": "abort"},
        )
        if choice == "resume":
            return "resume"
        if choice == "start-fresh":
            return "start-fresh"
        return "abort"

    async def stale_lock(self, info: LockInfo) -> bool:
        click.echo()
        click.echo(
            f"  Stale lock detected: pid {info.pid} (started {info.started_at}) "
            "is no longer running."
        )
        choice = await self._choose(
            "  Choice (s = steal the lock, q = abort)", {"s": "steal", "q": "abort"}
        )
        return choice == "steal"
