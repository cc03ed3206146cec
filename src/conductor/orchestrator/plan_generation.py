"""Draft a new implementation plan from a requirements document.

The author agent writes the plan file itself; this module only picks the
target path, records the run and checks the file exists afterwards. Plans land
in ``paths.plans`` as ``NNN-impl-<slug>.md`` with the next free sequence number.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from conductor.agents.base import AgentAdapter, AgentCancellationError
from conductor.config import ConductorConfig
from conductor.orchestrator.common import RunRecorder, invoke_agent
from conductor.paths import canonicalize_plan_path, run_log_dir
from conductor.plan import load_plan
from conductor.protocol import AUTHOR_STATUS_INSTRUCTIONS, ProtocolError, parse_author_status
from conductor.state.store import RunHistoryStore

logger = structlog.get_logger(__name__)

PLAN_FILE_PATTERN = re.compile(r"^(\d{3})-impl-.*\.md$")
_MAX_SEQUENCE_ATTEMPTS = 100


def next_sequence_number(plans_dir: Path) -> str:
    if not plans_dir.is_dir():
        return "001"
    highest = 0
    for entry in plans_dir.iterdir():
        match = PLAN_FILE_PATTERN.match(entry.name)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{highest + 1:03d}"


def slug_from_path(document_path: Path | str) -> str:
    """``docs/370-Court Time.md`` -> ``court-time``."""
    name = Path(document_path).name
    if name.endswith(".md"):
        name = name[: -len(".md")]
    name = re.sub(r"^\d+-", "", name)
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def compute_plan_path(plans_dir: Path, document_path: Path | str) -> Path:
    slug = slug_from_path(document_path) or "plan"
    sequence = int(next_sequence_number(plans_dir))
    for offset in range(_MAX_SEQUENCE_ATTEMPTS):
        candidate = plans_dir / f"{sequence + offset:03d}-impl-{slug}.md"
        if not candidate.exists():
            return candidate
    return plans_dir / f"{int(time.time() * 1000)}-impl-{slug}.md"


@dataclass(slots=True)
class PlanGenerationResult:
    run_id: str
    plan_path: Path
    created: bool = False
    escalated: bool = False
    failed: bool = False
    phase_count: int = 0
    reason: str | None = None


class PlanGenerator:
    def __init__(
        self,
        *,
        document_path: Path,
        project_root: Path,
        author: AgentAdapter,
        store: RunHistoryStore,
        config: ConductorConfig,
        plan_path: Path | None = None,
    ) -> None:
        self.document_path = document_path.resolve()
        self.project_root = project_root.resolve()
        self.author = author
        self.store = store
        self.config = config
        self.plan_path = plan_path

    def _prompt(self, target: Path) -> str:
        return (
            f"Read the requirements document at {self.document_path} and write an "
            f"implementation plan to {target}. Split the work into phases headed "
            "`## Phase N: Title`, each with a `- [ ]` checklist and a "
            "`**Completion gate:**` line. Do not implement anything yet.\n\n"
            f"{AUTHOR_STATUS_INSTRUCTIONS}"
        )

    async def run(self) -> PlanGenerationResult:
        if self.plan_path is not None:
            target = self.plan_path
        else:
            target = compute_plan_path(self.config.plans_dir(self.project_root), self.document_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target = canonicalize_plan_path(target)

        run = self.store.create_run(str(target), "plan")
        recorder = RunRecorder(self.store, run, None)
        log_dir = run_log_dir(self.config.state_dir(self.project_root), run.run_id)
        recorder.event(
            "plan_generate_started",
            document_path=str(self.document_path),
            plan_path=str(target),
        )

        def _failed(reason: str) -> PlanGenerationResult:
            recorder.event("plan_generate_failed", reason=reason)
            recorder.update(status="failed", current_state="failed")
            return PlanGenerationResult(
                run_id=run.run_id, plan_path=target, failed=True, reason=reason
            )

        try:
            call = await invoke_agent(
                self.author,
                recorder,
                role="author",
                prompt=self._prompt(target),
                workdir=self.project_root,
                log_dir=log_dir,
                iteration=0,
                timeout_seconds=self.config.agents.timeout_seconds,
                model=self.config.agents.author_model,
            )
        except (asyncio.CancelledError, AgentCancellationError, KeyboardInterrupt):
            recorder.event("run_cancelled")
            recorder.update(status="aborted", current_state="cancelled")
            raise

        if call.failed or call.result is None:
            return _failed(call.error or "author failed")
        try:
            status = parse_author_status(call.result.payload)
        except ProtocolError as exc:
            return _failed(f"invalid status: {exc}")
        recorder.event("author_status", status=status.to_dict())

        if status.result == "needs_human":
            recorder.event("escalation", reason=status.reason)
            recorder.update(status="escalated", current_state="escalated")
            return PlanGenerationResult(
                run_id=run.run_id, plan_path=target, escalated=True, reason=status.reason
            )
        if status.result == "failed":
            return _failed(f"author reported failure: {status.reason}")
        if not target.is_file():
            return _failed(f"Plan file not found at {target} after the author finished")

        plan = load_plan(target)
        self.store.upsert_plan(str(target), plan)
        recorder.event(
            "plan_generate_completed",
            plan_path=str(target),
            phase_count=len(plan.phases),
            notes=status.notes,
        )
        recorder.update(status="completed", current_state="completed")
        if not plan.phases:
            logger.warning("generated_plan_has_no_phases", plan_path=str(target))
        return PlanGenerationResult(
            run_id=run.run_id, plan_path=target, created=True, phase_count=len(plan.phases)
        )
