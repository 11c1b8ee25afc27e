"""JSON output: per-screen result.json and the run summary.json."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from visual_gate.models.run_result import RunSummary, ScreenResult

SUMMARY_FILE = "summary.json"
RESULT_FILE = "result.json"


def _relative(path: Optional[str], root: Path) -> Optional[str]:
    if not path:
        return None
    return Path(os.path.relpath(path, root)).as_posix()


def relativize_paths(result: ScreenResult, root: Path) -> ScreenResult:
    """Copy of the result with image paths relative to the run directory."""
    return result.model_copy(update={
        "expected_path": _relative(result.expected_path, root),
        "actual_path": _relative(result.actual_path, root),
        "diff_path": _relative(result.diff_path, root),
    })


def _dump(data: dict[str, Any], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(data, f, indent=2, default=str)


def write_screen_result(result: ScreenResult, output_path: Path) -> None:
    _dump(result.model_dump(by_alias=True, exclude_none=True), output_path)


def write_summary(summary: RunSummary, run_dir: Path) -> Path:
    path = run_dir / SUMMARY_FILE
    _dump(summary.model_dump(by_alias=True, exclude_none=True), path)
    return path


def load_summary(run_dir: Path) -> RunSummary:
    with open(run_dir / SUMMARY_FILE) as f:
        return RunSummary.model_validate(json.load(f))
