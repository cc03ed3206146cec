import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from conductor.agents.base import AgentAdapter, AgentCancellationError, AgentResult, InvokeOptions
from conductor.config import ConductorConfig
from conductor.gates.human import EscalationEvent, EscalationResponse, HumanGate, PhaseSummary
from conductor.lock import LockInfo, LockManager
from conductor.orchestrator.phase_execution import QUALITY_FIX_PREFIX, PhaseExecutionLoop
from conductor.state.models import RunRecord
from conductor.state.store import RunHistoryStore

PLAN = """# Retry Plan

## Phase 1: Schema

- [ ] add table

## Phase 2: Worker

**Completion gate:** worker drains the queue

- [ ] add worker
"""

READY = {"readiness": "ready", "items": []}
CHANGES = {
    "readiness": "ready_with_corrections",
    "items": [
        {"id": "P2.1", "title": "Name the index", "action": "auto_fix", "reason": "clarity"}
    ],
}
HUMAN = {
    "readiness": "not_ready",
    "items": [
        {"id": "P0.1", "title": "Data retention", "action": "human_required", "reason": "legal"}
    ],
}
COMPLETE = {"result": "complete", "commit": "abc123"}
INVALID = {"status": "done"}


class ScriptedAgent(AgentAdapter):
    """Answers invocations from a list; callables receive the options first."""

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def invoke(self, options: InvokeOptions) -> AgentResult:
        self.prompts.append(options.prompt)
        if not self.responses:
            raise AssertionError(f"unexpected {options.role} invocation")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(options)
        return AgentResult(output=json.dumps(response), duration_ms=1, payload=response)


class ScriptedGate(HumanGate):
    def __init__(
        self,
        escalations: list[EscalationResponse] | None = None,
        phase_decisions: list[str] | None = None,
        resume: str = "resume",
    ) -> None:
        self.escalation_responses = list(escalations or [])
        self.phase_decisions = list(phase_decisions or [])
        self.resume_decision = resume
        self.events: list[EscalationEvent] = []
        self.summaries: list[PhaseSummary] = []

    async def escalation(self, event: EscalationEvent) -> EscalationResponse:
        self.events.append(event)
        return self.escalation_responses.pop(0)

    async def phase_complete(self, summary: PhaseSummary) -> str:
        self.summaries.append(summary)
        return self.phase_decisions.pop(0) if self.phase_decisions else "continue"

    async def resume(self, run: RunRecord) -> str:
        return self.resume_decision

    async def stale_lock(self, info: LockInfo) -> bool:
        return True


def _config(**limits: Any) -> ConductorConfig:
    config = ConductorConfig.default()
    for name, value in limits.items():
        setattr(config.limits, name, value)
    return config


def _loop(
    root: Path,
    author: AgentAdapter,
    reviewer: AgentAdapter,
    *,
    config: ConductorConfig | None = None,
    gate: HumanGate | None = None,
    auto: bool = False,
    **kwargs: Any,
) -> PhaseExecutionLoop:
    plan = root / "docs" / "plan.md"
    if not plan.exists():
        plan.parent.mkdir(parents=True, exist_ok=True)
        plan.write_text(PLAN, encoding="utf-8")
    return PhaseExecutionLoop(
        plan_path=plan,
        project_root=root,
        author=author,
        reviewer=reviewer,
        store=RunHistoryStore(root / ".conductor"),
        locks=LockManager(root),
        config=config or ConductorConfig.default(),
        gate=gate,
        auto=auto,
        **kwargs,
    )


def _event_types(loop: PhaseExecutionLoop, run_id: str) -> list[str]:
    return [event.event_type for event in loop.store.get_events(run_id)]


def test_all_phases_complete_in_auto_mode(tmp_path: Path) -> None:
    author = ScriptedAgent([COMPLETE, COMPLETE])
    reviewer = ScriptedAgent([READY, READY])
    loop = _loop(tmp_path, author, reviewer, auto=True)

    result = asyncio.run(loop.run())

    assert result.complete is True
    assert result.total_phases == 2
    assert result.phases_completed == 2
    assert "Implement phase 1: Schema" in author.prompts[0]
    assert "Completion gate: worker drains the queue" in author.prompts[1]
    types = _event_types(loop, result.run_id)
    assert types.count("phase_started") == 2
    assert types.count("phase_complete") == 2
    assert types[-1] == "run_completed"
    run = loop.store.get_run(result.run_id)
    assert run.status == "completed"
    assert loop.store.get_plan(str(loop.plan_path)).phase_count == 2
    assert len(loop.store.get_agent_results(result.run_id)) == 4
    assert loop.locks.is_locked(loop.plan_path).locked is False


def test_invalid_author_status_escalates_after_retry_budget(tmp_path: Path) -> None:
    author = ScriptedAgent([INVALID] * 4)
    reviewer = ScriptedAgent([])
    loop = _loop(tmp_path, author, reviewer, config=_config(max_auto_retries=3), auto=True)

    result = asyncio.run(loop.run())

    assert result.escalated is True
    assert result.complete is False
    assert len(author.prompts) == 4
    assert "Author failed 4 time(s) in a row" in result.escalations[0].reason
    run = loop.store.get_run(result.run_id)
    assert run.status == "escalated"
    assert run.current_phase == "1"
    assert _event_types(loop, result.run_id).count("author_failed") == 4


def test_failing_quality_gate_feeds_output_back_to_author(tmp_path: Path) -> None:
    config = _config()
    config.quality.commands = ["test -f ready.flag || (echo 'ready.flag missing'; exit 1)"]

    def _create_flag(options: InvokeOptions) -> dict[str, Any]:
        (options.workdir / "ready.flag").write_text("", encoding="utf-8")
        return COMPLETE

    author = ScriptedAgent([COMPLETE, _create_flag, COMPLETE])
    reviewer = ScriptedAgent([READY, READY])
    loop = _loop(tmp_path, author, reviewer, config=config, auto=True)

    result = asyncio.run(loop.run())

    assert result.complete is True
    assert QUALITY_FIX_PREFIX in author.prompts[1]
    assert "ready.flag missing" in author.prompts[1]
    phase_one = loop.store.get_quality_results(result.run_id, phase="1")
    assert [(record.attempt, record.passed) for record in phase_one] == [(1, False), (2, True)]
    phase_two = loop.store.get_quality_results(result.run_id, phase="2")
    assert [record.attempt for record in phase_two] == [1]


def test_quality_retries_exhausted_escalates(tmp_path: Path) -> None:
    config = _config(max_quality_retries=1)
    config.quality.commands = ["exit 1"]
    author = ScriptedAgent([COMPLETE, COMPLETE])
    reviewer = ScriptedAgent([])
    loop = _loop(tmp_path, author, reviewer, config=config, auto=True)

    result = asyncio.run(loop.run())

    assert result.escalated is True
    assert len(author.prompts) == 2
    escalation = result.escalations[0]
    assert escalation.quality_results[0].command == "exit 1"
    assert "after 1 retries" in escalation.reason


def test_skip_quality_goes_straight_to_review(tmp_path: Path) -> None:
    config = _config()
    config.quality.commands = ["exit 1"]
    author = ScriptedAgent([COMPLETE, COMPLETE])
    reviewer = ScriptedAgent([READY, READY])
    loop = _loop(tmp_path, author, reviewer, config=config, auto=True, skip_quality=True)

    result = asyncio.run(loop.run())

    assert result.complete is True
    assert loop.store.get_quality_results(result.run_id) == []


def test_review_changes_share_the_auto_retry_budget(tmp_path: Path) -> None:
    author = ScriptedAgent([COMPLETE] * 3)
    reviewer = ScriptedAgent([CHANGES] * 3)
    loop = _loop(tmp_path, author, reviewer, config=_config(max_auto_retries=2), auto=True)

    result = asyncio.run(loop.run())

    assert result.escalated is True
    assert len(author.prompts) == 3
    assert len(reviewer.prompts) == 3
    assert "P2.1 Name the index" in author.prompts[1]
    assert "still requesting changes" in result.escalations[0].reason


def test_review_changes_use_review_budget_when_not_shared(tmp_path: Path) -> None:
    config = _config(max_auto_retries=0, max_review_iterations=1, share_review_budget=False)
    author = ScriptedAgent([COMPLETE] * 2)
    reviewer = ScriptedAgent([CHANGES] * 2)
    loop = _loop(tmp_path, author, reviewer, config=config, auto=True)

    result = asyncio.run(loop.run())

    assert result.escalated is True
    assert len(author.prompts) == 2
    assert len(reviewer.prompts) == 2


def test_circuit_breaker_caps_author_invocations(tmp_path: Path) -> None:
    config = _config(max_auto_retries=10, max_auto_iterations=2)
    author = ScriptedAgent([COMPLETE] * 2)
    reviewer = ScriptedAgent([CHANGES] * 2)
    loop = _loop(tmp_path, author, reviewer, config=config, auto=True)

    result = asyncio.run(loop.run())

    assert result.escalated is True
    assert len(author.prompts) == 2
    assert "Reached 2 author invocations" in result.escalations[0].reason


def test_human_review_item_escalates(tmp_path: Path) -> None:
    author = ScriptedAgent([COMPLETE])
    reviewer = ScriptedAgent([HUMAN])
    loop = _loop(tmp_path, author, reviewer, auto=True)

    result = asyncio.run(loop.run())

    assert result.escalated is True
    assert result.escalations[0].items[0].id == "P0.1"


def test_retry_after_escalation_carries_guidance(tmp_path: Path) -> None:
    gate = ScriptedGate(
        escalations=[EscalationResponse(action="retry", guidance="Use a partial index.")]
    )
    author = ScriptedAgent(
        [{"result": "needs_human", "reason": "which index?"}, COMPLETE, COMPLETE]
    )
    reviewer = ScriptedAgent([READY, READY])
    loop = _loop(tmp_path, author, reviewer, gate=gate)

    result = asyncio.run(loop.run())

    assert result.complete is True
    assert "which index?" in gate.events[0].reason
    assert "Operator guidance: Use a partial index." in author.prompts[1]
    assert [summary.phase for summary in gate.summaries] == ["1"]
    assert gate.summaries[0].quality_passed is None
    assert gate.summaries[0].commit == "abc123"


def test_override_accepts_phase_as_is(tmp_path: Path) -> None:
    gate = ScriptedGate(escalations=[EscalationResponse(action="override")])
    author = ScriptedAgent([COMPLETE, COMPLETE])
    reviewer = ScriptedAgent([HUMAN, READY])
    loop = _loop(tmp_path, author, reviewer, gate=gate)

    result = asyncio.run(loop.run())

    assert result.complete is True
    assert result.phases_completed == 2


def test_abort_at_escalation_marks_run_aborted(tmp_path: Path) -> None:
    gate = ScriptedGate(escalations=[EscalationResponse(action="abort")])
    author = ScriptedAgent([COMPLETE])
    reviewer = ScriptedAgent([HUMAN])
    loop = _loop(tmp_path, author, reviewer, gate=gate)

    result = asyncio.run(loop.run())

    assert result.aborted is True
    assert loop.store.get_run(result.run_id).status == "aborted"


def test_phase_gate_pause_then_resume_continues_next_phase(tmp_path: Path) -> None:
    gate = ScriptedGate(phase_decisions=["review"])
    author = ScriptedAgent([COMPLETE])
    reviewer = ScriptedAgent([READY])
    loop = _loop(tmp_path, author, reviewer, gate=gate)

    paused = asyncio.run(loop.run())

    assert paused.paused is True
    run = loop.store.get_run(paused.run_id)
    assert run.status == "pending"
    assert run.current_phase == "2"

    author = ScriptedAgent([COMPLETE])
    reviewer = ScriptedAgent([READY])
    resumed_loop = _loop(tmp_path, author, reviewer, gate=ScriptedGate())

    resumed = asyncio.run(resumed_loop.run())

    assert resumed.run_id == paused.run_id
    assert resumed.complete is True
    assert resumed.phases_completed == 2
    assert "Implement phase 2: Worker" in author.prompts[0]
    assert "run_resumed" in _event_types(resumed_loop, resumed.run_id)


def test_start_phase_skips_earlier_phases(tmp_path: Path) -> None:
    author = ScriptedAgent([COMPLETE])
    reviewer = ScriptedAgent([READY])
    loop = _loop(tmp_path, author, reviewer, auto=True, start_phase="2")

    result = asyncio.run(loop.run())

    assert result.complete is True
    assert result.phases_completed == 1
    assert "Implement phase 2" in author.prompts[0]


def test_unknown_start_phase_fails_run(tmp_path: Path) -> None:
    loop = _loop(tmp_path, ScriptedAgent([]), ScriptedAgent([]), auto=True, start_phase="9")

    result = asyncio.run(loop.run())

    assert result.failed is True
    assert loop.store.get_run(result.run_id).status == "failed"
    assert "plan_invalid" in _event_types(loop, result.run_id)


def test_plan_without_phases_fails_run(tmp_path: Path) -> None:
    plan = tmp_path / "docs" / "plan.md"
    plan.parent.mkdir(parents=True)
    plan.write_text("# Empty\n\nNo phases yet.\n", encoding="utf-8")
    loop = _loop(tmp_path, ScriptedAgent([]), ScriptedAgent([]), auto=True)

    result = asyncio.run(loop.run())

    assert result.failed is True
    assert result.total_phases == 0


def test_cancelled_agent_aborts_run_and_releases_lock(tmp_path: Path) -> None:
    author = ScriptedAgent([AgentCancellationError()])
    loop = _loop(tmp_path, author, ScriptedAgent([]), auto=True)

    with pytest.raises(AgentCancellationError):
        asyncio.run(loop.run())

    run = loop.store.list_runs()[-1]
    assert run.status == "aborted"
    assert run.current_state == "cancelled"
    assert _event_types(loop, run.run_id)[-1] == "run_cancelled"
    assert loop.locks.is_locked(loop.plan_path).locked is False


class CrashingPhaseGate(ScriptedGate):
    async def phase_complete(self, summary: PhaseSummary) -> str:
        raise RuntimeError("terminal closed")


def _complete_phase_one(options: InvokeOptions) -> dict[str, Any]:
    plan = Path(options.workdir) / "docs" / "plan.md"
    text = plan.read_text(encoding="utf-8")
    plan.write_text(
        text.replace("## Phase 1: Schema", "## Phase 1: Schema - COMPLETE"), encoding="utf-8"
    )
    return COMPLETE


def test_interruption_at_phase_gate_does_not_repeat_approved_phase(tmp_path: Path) -> None:
    author = ScriptedAgent([_complete_phase_one])
    loop = _loop(tmp_path, author, ScriptedAgent([READY]), gate=CrashingPhaseGate())

    with pytest.raises(RuntimeError):
        asyncio.run(loop.run())

    run = loop.store.list_runs()[-1]
    assert (run.status, run.current_phase, run.current_state) == ("running", "1", "phase_complete")

    author = ScriptedAgent([COMPLETE])
    reviewer = ScriptedAgent([READY])
    resumed_loop = _loop(tmp_path, author, reviewer, auto=True)

    result = asyncio.run(resumed_loop.run())

    assert result.run_id == run.run_id
    assert result.complete is True
    assert result.phases_completed == 2
    assert len(author.prompts) == 1
    assert "Implement phase 2: Worker" in author.prompts[0]
    assert _event_types(resumed_loop, run.run_id).count("phase_complete") == 2


@pytest.mark.parametrize(
    ("state", "status", "implemented", "reviews"),
    [
        ("implementing", "running", ["1", "2"], 2),
        ("quality_gating", "running", ["2"], 2),
        ("reviewing", "running", ["2"], 2),
        ("phase_complete", "running", ["2"], 1),
        ("escalated", "escalated", ["1", "2"], 2),
    ],
)
def test_resume_replays_recorded_state(
    tmp_path: Path, state: str, status: str, implemented: list[str], reviews: int
) -> None:
    author = ScriptedAgent([COMPLETE] * len(implemented))
    reviewer = ScriptedAgent([READY] * reviews)
    loop = _loop(tmp_path, author, reviewer, auto=True)
    previous = loop.store.create_run(str(loop.plan_path), "run")
    loop.store.update_run(
        previous.run_id, status=status, current_state=state, current_phase="1"
    )

    result = asyncio.run(loop.run())

    assert result.run_id == previous.run_id
    assert result.complete is True
    assert result.phases_completed == 2
    assert [prompt.split(":")[0] for prompt in author.prompts] == [
        f"Implement phase {number}" for number in implemented
    ]
    assert reviewer.responses == []
