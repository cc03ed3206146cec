"""Sequential quality-gate commands with bounded runtime and persisted output."""

from __future__ import annotations

import asyncio
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from conductor.process import DEFAULT_GRACE_SECONDS, terminate_process

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0
MAX_INLINE_OUTPUT_BYTES = 4096
TRUNCATION_NOTICE = "\n... [truncated, see full log file]"
STDERR_SEPARATOR = "\n--- stderr ---\n"

_SLUG_PATTERN = re.compile(r"[^a-zA-Z0-9]+")


@dataclass(slots=True)
class QualityGateOptions:
    run_id: str
    log_dir: Path
    phase: str
    attempt: int
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    max_output_bytes: int = MAX_INLINE_OUTPUT_BYTES


@dataclass(slots=True)
class QualityCommandResult:
    command: str
    passed: bool
    output: str
    output_path: Path | None
    duration_ms: int
    exit_code: int | None = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "passed": self.passed,
            "output": self.output,
            "output_path": str(self.output_path) if self.output_path else None,
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QualityCommandResult:
        output_path = payload.get("output_path")
        return cls(
            command=str(payload.get("command", "")),
            passed=bool(payload.get("passed")),
            output=str(payload.get("output", "")),
            output_path=Path(output_path) if output_path else None,
            duration_ms=int(payload.get("duration_ms", 0)),
            exit_code=payload.get("exit_code"),
            timed_out=bool(payload.get("timed_out", False)),
        )


@dataclass(slots=True)
class QualityGateResult:
    passed: bool
    results: list[QualityCommandResult] = field(default_factory=list)

    @property
    def failures(self) -> list[QualityCommandResult]:
        return [result for result in self.results if not result.passed]


def command_slug(command: str) -> str:
    return _SLUG_PATTERN.sub("-", command).strip("-")[:60].lower()


def log_file_name(phase: str, attempt: int, index: int, command: str) -> str:
    return f"quality-phase{phase}-attempt{attempt}-{index}-{command_slug(command)}.log"


def truncate_output(output: str, max_bytes: int = MAX_INLINE_OUTPUT_BYTES) -> str:
    encoded = output.encode("utf-8")
    if len(encoded) <= max_bytes:
        return output
    head = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return f"{head}{TRUNCATION_NOTICE}"


def _write_log(path: Path, content: str) -> Path | None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        logger.warning("quality_log_write_failed", path=str(path), error=str(exc))
        return None
    return path


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def run_single_command(
    command: str,
    workdir: Path,
    options: QualityGateOptions,
    *,
    index: int = 0,
) -> QualityCommandResult:
    log_path = options.log_dir / log_file_name(options.phase, options.attempt, index, command)
    started = time.monotonic()

    def _result(
        output: str,
        *,
        passed: bool,
        exit_code: int | None = None,
        timed_out: bool = False,
    ) -> QualityCommandResult:
        return QualityCommandResult(
            command=command,
            passed=passed,
            output=truncate_output(output, options.max_output_bytes),
            output_path=_write_log(log_path, output),
            duration_ms=_elapsed_ms(started),
            exit_code=exit_code,
            timed_out=timed_out,
        )

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(workdir),
            env=os.environ.copy(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        logger.warning("quality_command_spawn_failed", command=command, error=str(exc))
        return _result(f"[ERROR] {exc}", passed=False)

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=options.timeout_seconds
        )
    except TimeoutError:
        await terminate_process(process, grace_seconds=options.grace_seconds)
        logger.warning(
            "quality_command_timed_out",
            command=command,
            run_id=options.run_id,
            phase=options.phase,
            attempt=options.attempt,
            timeout_seconds=options.timeout_seconds,
        )
        return _result(
            f"[TIMEOUT] Command timed out after {options.timeout_seconds:g}s: {command}",
            passed=False,
            timed_out=True,
        )
    except asyncio.CancelledError:
        await terminate_process(process, grace_seconds=options.grace_seconds)
        raise

    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    full_output = stdout + (f"{STDERR_SEPARATOR}{stderr}" if stderr else "")
    exit_code = process.returncode
    return _result(full_output, passed=exit_code == 0, exit_code=exit_code)


async def run_quality_gates(
    commands: list[str],
    workdir: Path,
    options: QualityGateOptions,
) -> QualityGateResult:
    """Run every command in order; the gate passes only if all of them pass."""
    results: list[QualityCommandResult] = []
    for index, command in enumerate(commands):
        result = await run_single_command(command, workdir, options, index=index)
        results.append(result)
        logger.info(
            "quality_command_finished",
            command=command,
            run_id=options.run_id,
            phase=options.phase,
            attempt=options.attempt,
            passed=result.passed,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
    return QualityGateResult(passed=all(result.passed for result in results), results=results)
