"""Per-case scoring summaries built from step results."""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from stepgrader.errors import ErrorCategory

if TYPE_CHECKING:
    from stepgrader.executor import StepResult


@dataclass
class CaseSummary:
    case: str
    mark: float
    total_steps: int
    passed: int
    failed: int
    skipped: int
    points_awarded: float
    points_possible: float
    duration_seconds: float
    interrupted: bool = False
    errors_by_category: dict[str, int] = field(default_factory=dict)

    @property
    def score_ratio(self) -> float:
        """Fraction of possible points earned; a case with nothing scored counts as full."""
        if self.points_possible <= 0:
            return 1.0
        return self.points_awarded / self.points_possible

    @property
    def scaled_mark(self) -> float:
        return round(self.mark * self.score_ratio, 2)

    @property
    def all_passed(self) -> bool:
        return self.failed == 0 and not self.interrupted

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["score_ratio"] = round(self.score_ratio, 4)
        data["scaled_mark"] = self.scaled_mark
        return data


def summarize_case(
    case: str, mark: float, results: list[StepResult], interrupted: bool = False
) -> CaseSummary:
    skipped = sum(1 for r in results if r.skipped)
    failed = sum(1 for r in results if not r.ok)
    categories = Counter(
        r.error_category.value
        for r in results
        if not r.ok and r.error_category is not ErrorCategory.NONE
    )
    return CaseSummary(
        case=case,
        mark=mark,
        total_steps=len(results),
        passed=len(results) - failed - skipped,
        failed=failed,
        skipped=skipped,
        points_awarded=sum(r.points_awarded for r in results),
        points_possible=sum(r.points_possible for r in results),
        duration_seconds=round(sum(r.duration_ms for r in results) / 1000, 3),
        interrupted=interrupted,
        errors_by_category=dict(categories),
    )


def summarize_run(summaries: list[CaseSummary]) -> dict[str, Any]:
    """Totals across all cases of a run."""
    total_mark = sum(s.mark for s in summaries)
    earned = sum(s.scaled_mark for s in summaries)
    return {
        "cases": len(summaries),
        "cases_passed": sum(1 for s in summaries if s.all_passed),
        "steps": sum(s.total_steps for s in summaries),
        "steps_failed": sum(s.failed for s in summaries),
        "points_awarded": sum(s.points_awarded for s in summaries),
        "points_possible": sum(s.points_possible for s in summaries),
        "mark": round(earned, 2),
        "max_mark": round(total_mark, 2),
    }
