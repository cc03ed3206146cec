"""Advisory per-plan locks that survive crashes.

A lock is a small JSON file under ``<state_dir>/locks`` naming the holder's
pid. Liveness is decided by probing the pid, never by the age of the file, so
a lock left behind by a dead process is recovered on the next acquisition.
"""

from __future__ import annotations

import atexit
import contextlib
import hashlib
import json
import os
import signal
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import FrameType
from typing import Any

import structlog

from conductor.paths import canonicalize_plan_path

logger = structlog.get_logger(__name__)

LOCK_SUFFIX = ".lock"
_STEAL_SUFFIX = ".steal"
_MAX_ACQUIRE_ROUNDS = 5


class LockContentionError(RuntimeError):
    """Raised when another live process holds the plan lock."""

    def __init__(self, plan_path: Path | str, existing: LockInfo) -> None:
        super().__init__(
            f"Plan is locked by pid {existing.pid} (since {existing.started_at}): {plan_path}"
        )
        self.plan_path = str(plan_path)
        self.existing = existing


class LockRefusedError(LockContentionError):
    """Raised when the operator declines to take over a stale lock."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


@dataclass(frozen=True, slots=True)
class LockInfo:
    pid: int
    started_at: str
    plan_path: str

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "startedAt": self.started_at, "planPath": self.plan_path}

    @classmethod
    def from_dict(cls, payload: Any) -> LockInfo | None:
        if not isinstance(payload, dict):
            return None
        pid = payload.get("pid")
        started_at = payload.get("startedAt")
        plan_path = payload.get("planPath")
        if isinstance(pid, bool) or not isinstance(pid, int):
            return None
        if not isinstance(started_at, str) or not isinstance(plan_path, str):
            return None
        return cls(pid=pid, started_at=started_at, plan_path=plan_path)


@dataclass(slots=True)
class LockResult:
    acquired: bool
    existing_lock: LockInfo | None = None
    stale: bool = False
    guard: LockGuard | None = None


@dataclass(frozen=True, slots=True)
class LockStatus:
    locked: bool
    info: LockInfo | None = None
    stale: bool = False


class LockGuard:
    """Scoped ownership of one plan lock; ``release`` is idempotent."""

    def __init__(self, manager: LockManager, plan_path: Path) -> None:
        self._manager = manager
        self.plan_path = plan_path
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._manager._drop_hold(self.plan_path)  # noqa: SLF001

    def __enter__(self) -> LockGuard:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class LockManager:
    def __init__(self, project_root: Path, *, state_dir: str = ".conductor") -> None:
        self.project_root = project_root.resolve()
        self.lock_dir = self.project_root / state_dir / "locks"
        self._holds: dict[Path, int] = {}
        self._previous_handlers: dict[int, Any] = {}

    def lock_path(self, canonical_plan: Path) -> Path:
        digest = hashlib.sha256(str(canonical_plan).encode("utf-8")).hexdigest()[:16]
        return self.lock_dir / f"{digest}{LOCK_SUFFIX}"

    @staticmethod
    def _read_lock_file(path: Path) -> LockInfo | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return LockInfo.from_dict(payload)

    def _find_existing(self, canonical_plan: Path) -> tuple[Path, LockInfo | None] | None:
        primary = self.lock_path(canonical_plan)
        if primary.exists():
            return primary, self._read_lock_file(primary)
        if not self.lock_dir.is_dir():
            return None
        # Entries written under a different spelling of the same plan path.
        for entry in sorted(self.lock_dir.glob(f"*{LOCK_SUFFIX}")):
            info = self._read_lock_file(entry)
            if info is None:
                continue
            if canonicalize_plan_path(info.plan_path) == canonical_plan:
                return entry, info
        return None

    def _new_info(self, canonical_plan: Path) -> LockInfo:
        return LockInfo(pid=os.getpid(), started_at=_utcnow_iso(), plan_path=str(canonical_plan))

    def _write_temp(self, info: LockInfo) -> Path:
        fd, temp_name = tempfile.mkstemp(prefix=".tmp-", suffix=LOCK_SUFFIX, dir=self.lock_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(info.to_dict(), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(temp_name)
            raise
        return Path(temp_name)

    def _create_exclusive(self, target: Path, info: LockInfo) -> bool:
        temp_path = self._write_temp(info)
        try:
            # link() refuses an existing target, so readers never see a partial file.
            os.link(temp_path, target)
        except FileExistsError:
            return False
        finally:
            with contextlib.suppress(OSError):
                temp_path.unlink()
        return True

    @contextlib.contextmanager
    def _steal_mutex(self, target: Path):
        mutex = target.with_name(target.name + _STEAL_SUFFIX)
        for _ in range(2):
            try:
                fd = os.open(mutex, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                try:
                    holder = int(mutex.read_text(encoding="utf-8").strip() or "0")
                except (OSError, ValueError):
                    holder = 0
                if pid_alive(holder):
                    yield False
                    return
                with contextlib.suppress(FileNotFoundError):
                    mutex.unlink()
                continue
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            try:
                yield True
            finally:
                with contextlib.suppress(FileNotFoundError):
                    mutex.unlink()
            return
        yield False

    def _steal(
        self,
        canonical_plan: Path,
        found_path: Path,
        found_info: LockInfo | None,
    ) -> bool:
        target = self.lock_path(canonical_plan)
        with self._steal_mutex(target) as owned:
            if not owned:
                return False
            # Someone may have replaced the lock between our read and the mutex.
            if found_path.exists() and self._read_lock_file(found_path) != found_info:
                return False
            info = self._new_info(canonical_plan)
            temp_path = self._write_temp(info)
            try:
                os.replace(temp_path, target)
            except OSError:
                with contextlib.suppress(OSError):
                    temp_path.unlink()
                raise
            if found_path != target:
                with contextlib.suppress(OSError):
                    found_path.unlink()
            return self._read_lock_file(target) == info

    def _grant(self, canonical_plan: Path) -> LockGuard:
        self._holds[canonical_plan] = self._holds.get(canonical_plan, 0) + 1
        return LockGuard(self, canonical_plan)

    def _drop_hold(self, canonical_plan: Path) -> None:
        remaining = self._holds.get(canonical_plan, 0) - 1
        if remaining > 0:
            self._holds[canonical_plan] = remaining
            return
        self._holds.pop(canonical_plan, None)
        existing = self._find_existing(canonical_plan)
        if existing is None:
            return
        path, info = existing
        if info is not None and info.pid != os.getpid():
            logger.warning(
                "lock_release_skipped_foreign_holder",
                plan_path=str(canonical_plan),
                holder_pid=info.pid,
            )
            return
        with contextlib.suppress(OSError):
            path.unlink()
        logger.debug("lock_released", plan_path=str(canonical_plan))

    def acquire(self, plan_path: Path | str) -> LockResult:
        canonical_plan = canonicalize_plan_path(plan_path)
        target = self.lock_path(canonical_plan)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

        for _ in range(_MAX_ACQUIRE_ROUNDS):
            existing = self._find_existing(canonical_plan)
            if existing is None:
                if self._create_exclusive(target, self._new_info(canonical_plan)):
                    logger.debug("lock_acquired", plan_path=str(canonical_plan))
                    return LockResult(acquired=True, guard=self._grant(canonical_plan))
                continue

            found_path, info = existing
            if info is None:
                if self._steal(canonical_plan, found_path, None):
                    logger.warning("lock_stolen_corrupt", plan_path=str(canonical_plan))
                    return LockResult(
                        acquired=True, stale=True, guard=self._grant(canonical_plan)
                    )
                continue

            if info.pid == os.getpid():
                return LockResult(acquired=True, guard=self._grant(canonical_plan))

            if pid_alive(info.pid):
                return LockResult(acquired=False, existing_lock=info, stale=False)

            if self._steal(canonical_plan, found_path, info):
                logger.warning(
                    "lock_stolen_stale",
                    plan_path=str(canonical_plan),
                    previous_pid=info.pid,
                    previous_started_at=info.started_at,
                )
                return LockResult(
                    acquired=True,
                    existing_lock=info,
                    stale=True,
                    guard=self._grant(canonical_plan),
                )

        status = self.is_locked(canonical_plan)
        return LockResult(acquired=False, existing_lock=status.info, stale=status.stale)

    def acquire_or_raise(self, plan_path: Path | str) -> LockGuard:
        result = self.acquire(plan_path)
        if not result.acquired or result.guard is None:
            existing = result.existing_lock or self._new_info(canonicalize_plan_path(plan_path))
            raise LockContentionError(plan_path, existing)
        return result.guard

    def release(self, plan_path: Path | str) -> None:
        """Remove the lock unconditionally; a missing file is not an error."""
        canonical_plan = canonicalize_plan_path(plan_path)
        self._holds.pop(canonical_plan, None)
        target = self.lock_path(canonical_plan)
        existing = self._find_existing(canonical_plan)
        with contextlib.suppress(OSError):
            target.unlink()
        if existing is not None and existing[0] != target:
            with contextlib.suppress(OSError):
                existing[0].unlink()

    def is_locked(self, plan_path: Path | str) -> LockStatus:
        canonical_plan = canonicalize_plan_path(plan_path)
        existing = self._find_existing(canonical_plan)
        if existing is None:
            return LockStatus(locked=False)
        info = existing[1]
        if info is None:
            return LockStatus(locked=False)
        if not pid_alive(info.pid):
            return LockStatus(locked=True, info=info, stale=True)
        return LockStatus(locked=True, info=info, stale=False)

    def release_all(self) -> None:
        for canonical_plan in list(self._holds):
            self._holds[canonical_plan] = 1
            self._drop_hold(canonical_plan)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        self.release_all()
        if signum == signal.SIGTERM:
            raise SystemExit(128 + signal.SIGTERM)
        previous = self._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
            return
        raise KeyboardInterrupt

    def register_cleanup(self) -> Callable[[], None]:
        """Release held locks at exit and on SIGINT/SIGTERM.

        Must be called from the main thread. Returns a callable that restores
        the previous handlers.
        """

        atexit.register(self.release_all)
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

        def _uninstall() -> None:
            atexit.unregister(self.release_all)
            for signum, previous in self._previous_handlers.items():
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
            self._previous_handlers.clear()

        return _uninstall
