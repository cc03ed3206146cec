import json
import os
import signal
from pathlib import Path

import pytest

from conductor.lock import LockContentionError, LockInfo, LockManager, pid_alive
from conductor.paths import canonicalize_plan_path

DEAD_PID = 999_999_999


def _plan(tmp_path: Path) -> Path:
    plan = tmp_path / "docs" / "plan.md"
    plan.parent.mkdir(parents=True, exist_ok=True)
    plan.write_text("# Plan\n", encoding="utf-8")
    return plan


def _write_lock(path: Path, pid: int, plan: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    info = LockInfo(pid=pid, started_at="2026-01-01T00:00:00.000+00:00", plan_path=str(plan))
    path.write_text(json.dumps(info.to_dict()), encoding="utf-8")


def test_pid_alive_probes_processes() -> None:
    assert pid_alive(os.getpid()) is True
    assert pid_alive(DEAD_PID) is False
    assert pid_alive(0) is False
    assert pid_alive(-5) is False


def test_acquire_writes_lock_and_release_removes_it(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)

    result = manager.acquire(plan)

    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    assert result.acquired is True
    assert result.stale is False
    payload = json.loads(lock_file.read_text(encoding="utf-8"))
    assert payload["pid"] == os.getpid()
    assert payload["planPath"] == str(canonicalize_plan_path(plan))
    assert "startedAt" in payload
    assert lock_file.parent == tmp_path.resolve() / ".conductor" / "locks"

    result.guard.release()
    assert not lock_file.exists()
    assert manager.is_locked(plan).locked is False


def test_reacquire_in_same_process_is_reentrant(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))

    first = manager.acquire(plan)
    second = manager.acquire(tmp_path / "docs" / ".." / "docs" / "plan.md")

    assert first.acquired and second.acquired
    second.guard.release()
    assert lock_file.exists()
    second.guard.release()
    assert lock_file.exists()
    first.guard.release()
    assert not lock_file.exists()


def test_live_foreign_holder_blocks_acquisition(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    _write_lock(lock_file, os.getppid(), plan)

    result = manager.acquire(plan)

    assert result.acquired is False
    assert result.existing_lock is not None
    assert result.existing_lock.pid == os.getppid()
    status = manager.is_locked(plan)
    assert status.locked is True
    assert status.stale is False
    with pytest.raises(LockContentionError, match="locked by pid"):
        manager.acquire_or_raise(plan)


def test_stale_lock_from_dead_process_is_taken_over(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    _write_lock(lock_file, DEAD_PID, plan)

    assert manager.is_locked(plan).stale is True
    result = manager.acquire(plan)

    assert result.acquired is True
    assert result.stale is True
    assert result.existing_lock.pid == DEAD_PID
    assert json.loads(lock_file.read_text(encoding="utf-8"))["pid"] == os.getpid()
    assert not lock_file.with_name(lock_file.name + ".steal").exists()
    result.guard.release()


def test_corrupt_lock_file_is_not_locked_and_gets_replaced(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    lock_file.parent.mkdir(parents=True)
    lock_file.write_text("{not json", encoding="utf-8")

    assert manager.is_locked(plan).locked is False
    result = manager.acquire(plan)

    assert result.acquired is True
    assert json.loads(lock_file.read_text(encoding="utf-8"))["pid"] == os.getpid()
    result.guard.release()


def test_lock_under_another_file_name_is_found_and_cleaned(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    legacy = manager.lock_dir / "older-naming.lock"
    _write_lock(legacy, DEAD_PID, plan)

    status = manager.is_locked(plan)
    assert status.locked is True
    assert status.stale is True

    result = manager.acquire(plan)

    assert result.acquired is True
    assert not legacy.exists()
    assert manager.lock_path(canonicalize_plan_path(plan)).exists()
    result.guard.release()


def test_guard_does_not_remove_lock_taken_by_another_process(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))

    result = manager.acquire(plan)
    _write_lock(lock_file, os.getppid(), plan)
    result.guard.release()

    assert lock_file.exists()
    assert result.guard.released is True


def test_release_is_unconditional(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    _write_lock(lock_file, os.getppid(), plan)

    manager.release(plan)
    manager.release(plan)

    assert not lock_file.exists()


def test_sigterm_handler_releases_locks_and_exits(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    previous = signal.getsignal(signal.SIGTERM)
    uninstall = manager.register_cleanup()
    try:
        manager.acquire(plan)
        assert signal.getsignal(signal.SIGTERM) == manager._handle_signal

        with pytest.raises(SystemExit) as excinfo:
            manager._handle_signal(signal.SIGTERM, None)

        assert excinfo.value.code == 143
        assert not lock_file.exists()
    finally:
        uninstall()
    assert signal.getsignal(signal.SIGTERM) == previous


def test_acquire_after_release_is_not_stale(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)

    manager.acquire(plan).guard.release()
    manager.release(plan)
    result = manager.acquire(plan)

    assert result.acquired is True
    assert result.stale is False
    assert result.existing_lock is None
    result.guard.release()


def test_sigint_handler_releases_locks_and_chains_previous_handler(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    received: list[int] = []
    original = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
    try:
        uninstall = manager.register_cleanup()
        try:
            manager.acquire(plan)
            manager._handle_signal(signal.SIGINT, None)
        finally:
            uninstall()
    finally:
        signal.signal(signal.SIGINT, original)

    assert received == [signal.SIGINT]
    assert not lock_file.exists()


def test_sigint_without_previous_handler_raises_keyboard_interrupt(tmp_path: Path) -> None:
    plan = _plan(tmp_path)
    manager = LockManager(tmp_path)
    lock_file = manager.lock_path(canonicalize_plan_path(plan))
    original = signal.signal(signal.SIGINT, signal.SIG_DFL)
    try:
        uninstall = manager.register_cleanup()
        try:
            manager.acquire(plan)
            with pytest.raises(KeyboardInterrupt):
                manager._handle_signal(signal.SIGINT, None)
        finally:
            uninstall()
    finally:
        signal.signal(signal.SIGINT, original)

    assert not lock_file.exists()
