from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

import click

from conductor.agents.base import AgentAdapter, AgentExecutionError
from conductor.agents.command import CommandAgentAdapter
from conductor.audit import AuditDecodeError, read_audit_records
from conductor.config import (
    DEFAULT_CONFIG_FILENAME,
    ConductorConfig,
    ConfigError,
    load_config,
    save_config,
)
from conductor.gates.human import TerminalHumanGate
from conductor.lock import LockContentionError, LockManager
from conductor.observability import configure_logging
from conductor.orchestrator.phase_execution import PhaseExecutionLoop
from conductor.orchestrator.plan_generation import PlanGenerator
from conductor.orchestrator.plan_review import PlanReviewLoop
from conductor.paths import canonicalize_plan_path
from conductor.state.store import RunHistoryStore, StateStoreError


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: ConductorConfig
    store: RunHistoryStore
    locks: LockManager


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _build_agents(config: ConductorConfig) -> tuple[AgentAdapter, AgentAdapter]:
    return (
        CommandAgentAdapter(config.agents.author_command, name="author"),
        CommandAgentAdapter(config.agents.reviewer_command, name="reviewer"),
    )


def _load_runtime(project_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(config.logging.level, json_output=config.logging.json)
    state_dir = config.state_dir(project_root)
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        store=RunHistoryStore(state_dir),
        locks=LockManager(project_root, state_dir=config.paths.state_dir),
    )


def _require_plan(plan: str) -> Path:
    plan_path = canonicalize_plan_path(plan)
    if not plan_path.is_file():
        raise click.ClickException(f"Plan not found: {plan}")
    return plan_path


def _run_with_cleanup(runtime: Runtime, coroutine_factory):
    uninstall = runtime.locks.register_cleanup()
    try:
        return asyncio.run(coroutine_factory())
    except LockContentionError as exc:
        raise click.ClickException(
            f"{exc}. Another conductor process is working on this plan."
        ) from exc
    except (AgentExecutionError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.locks.release_all()
        uninstall()


@click.group()
def cli() -> None:
    """Conductor CLI."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def init_command(config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    save_config(config_path, config)
    state_dir = config.state_dir(project_root)
    for child in ("state", "locks", "logs"):
        (state_dir / child).mkdir(parents=True, exist_ok=True)
    config.reviews_dir(project_root).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized conductor in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state_dir}")


@cli.command("plan")
@click.argument("document")
@click.option(
    "--out",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the plan here instead of the next numbered file in paths.plans.",
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def plan_command(document: str, out: Path | None, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    document_path = Path(document).resolve()
    if not document_path.is_file():
        raise click.ClickException(f"Requirements document not found: {document}")
    author, _ = _build_agents(runtime.config)
    generator = PlanGenerator(
        document_path=document_path,
        project_root=project_root,
        author=author,
        store=runtime.store,
        config=runtime.config,
        plan_path=out.resolve() if out is not None else None,
    )
    result = _run_with_cleanup(runtime, generator.run)

    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Plan: {result.plan_path}")
    if result.created:
        click.echo(f"Phases: {result.phase_count}")
        click.echo(f"Next: conductor plan-review {result.plan_path}")
        return
    if result.escalated:
        raise click.ClickException(f"Author needs human input: {result.reason}")
    raise click.ClickException(f"Plan generation failed: {result.reason}")


@cli.command("plan-review")
@click.argument("plan")
@click.option("--auto", is_flag=True, default=False, help="Never prompt; escalations stop the run.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def plan_review_command(plan: str, auto: bool, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    plan_path = _require_plan(plan)
    author, reviewer = _build_agents(runtime.config)
    loop = PlanReviewLoop(
        plan_path=plan_path,
        project_root=project_root,
        author=author,
        reviewer=reviewer,
        store=runtime.store,
        locks=runtime.locks,
        config=runtime.config,
        gate=None if auto else TerminalHumanGate(),
        auto=auto,
    )
    result = _run_with_cleanup(runtime, loop.run)

    click.echo(f"Run ID: {result.run_id or '-'}")
    click.echo(f"Review: {result.review_path}")
    click.echo(f"Iterations: {result.iterations}")
    if result.approved:
        click.echo("Plan approved.")
        return
    if result.escalated:
        reason = result.escalations[-1].reason if result.escalations else "escalated"
        raise click.ClickException(f"Plan review escalated: {reason}")
    raise click.ClickException("Plan review aborted.")


@cli.command("run")
@click.argument("plan")
@click.option("--auto", is_flag=True, default=False, help="Never prompt; escalations stop the run.")
@click.option("--skip-quality", is_flag=True, default=False)
@click.option("--start-phase", "start_phase", default=None)
@click.option(
    "--workdir",
    type=click.Path(file_okay=False, exists=True, path_type=Path),
    default=None,
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def run_command(
    plan: str,
    auto: bool,
    skip_quality: bool,
    start_phase: str | None,
    workdir: Path | None,
    config_value: str,
) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    plan_path = _require_plan(plan)
    author, reviewer = _build_agents(runtime.config)
    loop = PhaseExecutionLoop(
        plan_path=plan_path,
        project_root=project_root,
        author=author,
        reviewer=reviewer,
        store=runtime.store,
        locks=runtime.locks,
        config=runtime.config,
        gate=None if auto else TerminalHumanGate(),
        auto=auto,
        workdir=workdir,
        skip_quality=skip_quality,
        start_phase=start_phase,
    )
    result = _run_with_cleanup(runtime, loop.run)

    click.echo(f"Run ID: {result.run_id or '-'}")
    click.echo(f"Phases: {result.phases_completed} completed of {result.total_phases}")
    if result.complete:
        click.echo("All phases complete.")
        return
    if result.paused:
        click.echo("Paused for review. Run again to continue.")
        return
    if result.escalated:
        reason = result.escalations[-1].reason if result.escalations else "escalated"
        raise click.ClickException(f"Run escalated: {reason}")
    if result.failed:
        raise click.ClickException("Run failed; see the run events for details.")
    raise click.ClickException("Run aborted.")


@cli.command("status")
@click.argument("plan")
@click.option("--events", "show_events", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def status_command(plan: str, show_events: bool, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    plan_path = canonicalize_plan_path(plan)
    runs = runtime.store.list_runs(plan_path=str(plan_path))
    lock = runtime.locks.is_locked(plan_path)
    plan_record = runtime.store.get_plan(str(plan_path))
    payload: dict = {
        "plan": str(plan_path),
        "plan_progress": plan_record.to_dict() if plan_record else None,
        "lock": {
            "locked": lock.locked,
            "stale": lock.stale,
            "holder": lock.info.to_dict() if lock.info else None,
        },
        "runs": [run.to_dict() for run in runs],
    }
    if show_events and runs:
        latest = runs[-1]
        payload["events"] = [event.to_dict() for event in runtime.store.get_events(latest.run_id)]
        if latest.review_path:
            try:
                payload["audit_records"] = read_audit_records(Path(latest.review_path))
            except AuditDecodeError as exc:
                raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("unlock")
@click.argument("plan")
@click.option(
    "--force", is_flag=True, default=False, help="Remove the lock even if its holder is alive."
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILENAME, show_default=True)
def unlock_command(plan: str, force: bool, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    runtime = _load_runtime(project_root, _resolve_config_path(project_root, config_value))
    plan_path = canonicalize_plan_path(plan)
    status = runtime.locks.is_locked(plan_path)
    if not status.locked:
        if runtime.locks.lock_path(plan_path).exists():
            # Unreadable lock file; nobody can be holding it.
            runtime.locks.release(plan_path)
            click.echo("Removed unreadable lock file.")
            return
        click.echo("Plan is not locked.")
        return
    if status.info is not None and not status.stale and not force:
        raise click.ClickException(
            f"Plan is locked by live pid {status.info.pid}. Use --force to remove it anyway."
        )
    runtime.locks.release(plan_path)
    click.echo("Lock removed.")
