from __future__ import annotations

import os
from pathlib import Path


def canonicalize_plan_path(raw_path: str | os.PathLike[str]) -> Path:
    """Absolute path with symlinks resolved; falls back to the absolute path."""
    absolute = Path(os.path.abspath(os.fspath(raw_path)))
    try:
        return Path(os.path.realpath(absolute, strict=True))
    except OSError:
        return absolute


def run_log_dir(state_dir: Path, run_id: str) -> Path:
    return state_dir / "logs" / run_id
