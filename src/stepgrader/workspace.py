"""On-disk layout of a grading run's result folder."""

from __future__ import annotations

import shutil
from pathlib import Path

ACTUAL_DIR = "actual"
MISMATCH_DIR = "mismatches"
STAGE_FILE = "stage_{stage}.txt"
DIFF_FILE = "stage_{stage}.diff.txt"
UNKNOWN_QUESTION = "Unknown"
DEFAULT_STAGE = "0"


def _safe(part: str) -> str:
    """Keep a path segment inside its parent directory."""
    cleaned = part.strip().replace("/", "_").replace("\\", "_")
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


def actual_path(result_root: Path, folder: str, question: str, stage: str) -> Path:
    """Path of the captured text for one channel folder, question and stage."""
    return (
        Path(result_root)
        / ACTUAL_DIR
        / folder
        / _safe(question or UNKNOWN_QUESTION)
        / STAGE_FILE.format(stage=_safe(stage or DEFAULT_STAGE))
    )


def mismatch_path(result_root: Path, question: str, stage: str) -> Path:
    """Path of the diff artifact written when a text comparison fails."""
    return (
        Path(result_root)
        / MISMATCH_DIR
        / _safe(question or UNKNOWN_QUESTION)
        / DIFF_FILE.format(stage=_safe(stage or DEFAULT_STAGE))
    )


class ResultWorkspace:
    """Manages the result folders of a run: one sub-folder per case."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    def case_dir(self, case_name: str) -> Path:
        return self.base_dir / _safe(case_name)

    def prepare_case(self, case_name: str) -> Path:
        """Create an empty result folder for a case, removing stale results."""
        case_dir = self.case_dir(case_name)
        if case_dir.exists():
            shutil.rmtree(case_dir)
        (case_dir / ACTUAL_DIR).mkdir(parents=True)
        return case_dir
