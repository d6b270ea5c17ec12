"""Reporters for grading runs."""

from stepgrader.reporting.base import CompositeReporter, LogReporter, StepReporter
from stepgrader.reporting.junit import JUnitReporter, write_junit

__all__ = [
    "CompositeReporter",
    "JUnitReporter",
    "LogReporter",
    "StepReporter",
    "write_junit",
]
