"""Reporter interface consumed by the suite runner."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from stepgrader.config import CaseConfig
    from stepgrader.executor import StepResult
    from stepgrader.metrics import CaseSummary


class StepReporter(Protocol):
    def begin_case(self, case: CaseConfig) -> None: ...

    def log_step(self, result: StepResult) -> None: ...

    def end_case(self, summary: CaseSummary) -> None: ...

    def end_run(self, summaries: list[CaseSummary], interrupted: bool) -> None: ...


class LogReporter:
    """Writes one line per step and a summary per case to a logger."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def begin_case(self, case: CaseConfig) -> None:
        self.logger.info(f"=== Case '{case.name}' ({len(case.steps)} steps, mark {case.mark:g})")

    def log_step(self, result: StepResult) -> None:
        if result.skipped:
            return
        if not result.ok:
            self.logger.warning(
                f"  {result.step.id} {result.error_code.value}: {result.message}"
            )

    def end_case(self, summary: CaseSummary) -> None:
        self.logger.info(
            f"=== Case '{summary.case}': {summary.passed} passed, {summary.failed} failed, "
            f"{summary.skipped} skipped; {summary.points_awarded:g}/"
            f"{summary.points_possible:g} points, mark {summary.scaled_mark:g}/{summary.mark:g}"
        )

    def end_run(self, summaries: list[CaseSummary], interrupted: bool) -> None:
        if interrupted:
            self.logger.warning("Run was interrupted; results are partial")


class CompositeReporter:
    """Fans every event out to several reporters."""

    def __init__(self, reporters: list[StepReporter]) -> None:
        self.reporters = reporters

    def begin_case(self, case: CaseConfig) -> None:
        for reporter in self.reporters:
            reporter.begin_case(case)

    def log_step(self, result: StepResult) -> None:
        for reporter in self.reporters:
            reporter.log_step(result)

    def end_case(self, summary: CaseSummary) -> None:
        for reporter in self.reporters:
            reporter.end_case(summary)

    def end_run(self, summaries: list[CaseSummary], interrupted: bool) -> None:
        for reporter in self.reporters:
            reporter.end_run(summaries, interrupted)
