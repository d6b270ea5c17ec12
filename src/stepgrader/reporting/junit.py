from __future__ import annotations

import importlib.metadata
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from junitparser import Failure, JUnitXml, Skipped, TestCase, TestSuite

from stepgrader.metrics import summarize_run

if TYPE_CHECKING:
    from stepgrader.config import CaseConfig
    from stepgrader.executor import StepResult
    from stepgrader.metrics import CaseSummary


def _stepgrader_version() -> str:
    try:
        return importlib.metadata.version("stepgrader")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def write_junit(
    run_dir: Path,
    case_results: dict[str, list[StepResult]],
    summaries: list[CaseSummary],
) -> Path:
    """Write junit.xml with one suite per case and one test case per step."""
    xml = JUnitXml()

    for summary in summaries:
        suite = TestSuite(summary.case)
        suite.add_property("mark", str(summary.mark))
        suite.add_property("scaled_mark", str(summary.scaled_mark))
        suite.add_property("points_awarded", str(summary.points_awarded))
        suite.add_property("points_possible", str(summary.points_possible))
        if summary.interrupted:
            suite.add_property("interrupted", "true")

        for result in case_results.get(summary.case, []):
            case = TestCase(f"{result.step.id} {result.step.action}")
            case.classname = f"{summary.case}.{result.step.question_code or 'Unknown'}"
            case.time = round(result.duration_ms / 1000, 3)
            if result.skipped:
                case.result = [Skipped(result.message)]
            elif not result.ok:
                case.result = [Failure(result.message, result.error_code.value)]
            suite.add_testcase(case)

        # Set time after add_testcase (add_testcase resets it via update_statistics)
        suite.time = summary.duration_seconds
        xml.append(suite)

    junit_path = run_dir / "junit.xml"
    xml.write(str(junit_path), pretty=True)
    return junit_path


class JUnitReporter:
    """Collects results during a run and writes junit.xml and summary.yaml at the end."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = Path(run_dir)
        self.case_results: dict[str, list[StepResult]] = {}
        self._current: str | None = None

    def begin_case(self, case: CaseConfig) -> None:
        self._current = case.name
        self.case_results[case.name] = []

    def log_step(self, result: StepResult) -> None:
        if self._current is not None:
            self.case_results[self._current].append(result)

    def end_case(self, summary: CaseSummary) -> None:
        self._current = None

    def end_run(self, summaries: list[CaseSummary], interrupted: bool) -> None:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        write_junit(self.run_dir, self.case_results, summaries)

        summary: dict[str, Any] = {
            "run_id": self.run_dir.name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stepgrader_version": _stepgrader_version(),
            "totals": summarize_run(summaries),
            "cases": [
                {
                    **s.to_dict(),
                    "steps": [r.to_dict() for r in self.case_results.get(s.case, [])],
                }
                for s in summaries
            ],
        }
        if interrupted:
            summary["interrupted"] = True

        (self.run_dir / "summary.yaml").write_text(
            yaml.safe_dump(summary, default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )
