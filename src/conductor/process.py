from __future__ import annotations

import asyncio
import contextlib
import os
import signal

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_GRACE_SECONDS = 2.0


def _signal_group(process: asyncio.subprocess.Process, signum: int) -> None:
    # Children are started with start_new_session=True, so pgid == pid.
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        return
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(signum)


async def terminate_process(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float = DEFAULT_GRACE_SECONDS,
) -> None:
    """SIGTERM the process group, wait out the grace window, then SIGKILL it."""
    if process.returncode is None:
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        except TimeoutError:
            logger.warning("process_kill_escalated", pid=process.pid, grace_seconds=grace_seconds)
    # Stragglers that ignored SIGTERM keep the group alive after the leader exits.
    _signal_group(process, signal.SIGKILL)
    if process.returncode is None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(process.wait(), timeout=max(grace_seconds, 1.0))
