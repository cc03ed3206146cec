from __future__ import annotations

import asyncio
import json
import os
import signal
import time
from typing import Any

import structlog

from conductor.agents.base import (
    AgentAdapter,
    AgentCancellationError,
    AgentProcessError,
    AgentResult,
    AgentTimeoutError,
    InvokeOptions,
)
from conductor.process import terminate_process

logger = structlog.get_logger(__name__)

_INTERRUPTED_EXIT_CODES = {-signal.SIGINT, 128 + signal.SIGINT}


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def extract_structured_payload(raw_text: str) -> tuple[dict[str, Any] | None, str | None]:
    """Return the last JSON object the agent printed and its session id.

    Harnesses that wrap the transcript in a result envelope
    (``{"type": "result", "result": "...", "session_id": ...}``) are unwrapped
    first; the status object is then searched for inside the result text.
    """

    objects = extract_json_objects(raw_text)
    if not objects:
        return None, None
    last = objects[-1]
    if last.get("type") != "result":
        return last, None
    session_id = last.get("session_id") if isinstance(last.get("session_id"), str) else None
    structured = last.get("structured_output")
    if isinstance(structured, dict):
        return structured, session_id
    inner = last.get("result")
    if isinstance(inner, str):
        inner_objects = extract_json_objects(inner)
        if inner_objects:
            return inner_objects[-1], session_id
    return None, session_id


class CommandAgentAdapter(AgentAdapter):
    """Runs an agent CLI once per invocation with the prompt as its last argument."""

    def __init__(self, command: list[str], *, name: str = "agent") -> None:
        if not command:
            raise ValueError("Agent command must not be empty.")
        self.command = list(command)
        self.name = name

    def build_command(self, options: InvokeOptions) -> list[str]:
        command = list(self.command)
        if options.model:
            command.extend(["--model", options.model])
        command.append(options.prompt)
        return command

    async def invoke(self, options: InvokeOptions) -> AgentResult:
        command = self.build_command(options)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(options.workdir),
                env=os.environ.copy(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Agent binary not found: {command[0]}",
                agent=self.name,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise AgentProcessError(
                f"Failed to start agent {command[0]}: {exc}", agent=self.name
            ) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=options.timeout_seconds
            )
        except TimeoutError as exc:
            await terminate_process(process)
            raise AgentTimeoutError(
                f"Agent {self.name} timed out after {options.timeout_seconds:.1f}s",
                agent=self.name,
            ) from exc
        except asyncio.CancelledError:
            await terminate_process(process)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        self._write_log(options, stdout, stderr)

        exit_code = process.returncode
        if exit_code in _INTERRUPTED_EXIT_CODES:
            raise AgentCancellationError(
                f"Agent {self.name} was interrupted.", agent=self.name, exit_code=exit_code
            )

        payload, session_id = extract_structured_payload(stdout)
        error = None
        if exit_code != 0:
            error = stderr.strip()[-1000:] or f"exit code {exit_code}"
        logger.info(
            "agent_invocation_finished",
            agent=self.name,
            role=options.role,
            exit_code=exit_code,
            duration_ms=duration_ms,
            structured=payload is not None,
        )
        return AgentResult(
            output=stdout,
            duration_ms=duration_ms,
            payload=payload,
            exit_code=exit_code,
            session_id=session_id,
            error=error,
        )

    def _write_log(self, options: InvokeOptions, stdout: str, stderr: str) -> None:
        if options.log_path is None:
            return
        content = stdout + (f"\n--- stderr ---\n{stderr}" if stderr else "")
        try:
            options.log_path.parent.mkdir(parents=True, exist_ok=True)
            options.log_path.write_text(content, encoding="utf-8")
        except OSError as exc:
            logger.warning("agent_log_write_failed", path=str(options.log_path), error=str(exc))
