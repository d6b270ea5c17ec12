"""Base data structures for the comparison engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from stepgrader.capture import CaptureStore, is_memory_ref
from stepgrader.errors import ErrorCode

IGNORED_MESSAGE = "Ignored: expected missing"
MISSING_PLACEHOLDER = "-"


@dataclass(frozen=True)
class CompareResult:
    """Verdict of a single comparison.

    Attributes:
        equal: Whether actual matched expected under the comparison's policy.
        message: Human-readable detail about the result.
        code: Structured verdict. ``OK`` on a match, otherwise the specific
            mismatch or missing-input code, so callers never parse ``message``.
        ignored: True when the expected side was missing. Such results count
            as equal but carry no points.
    """

    equal: bool
    message: str
    code: ErrorCode = ErrorCode.OK
    ignored: bool = False


@dataclass(frozen=True)
class TextCompareResult(CompareResult):
    """Text verdict with enough context to explain the first difference."""

    first_diff_index: int | None = None
    expected_context: str = ""
    actual_context: str = ""
    normalized_expected: str = ""
    normalized_actual: str = ""
    expected_text: str = field(default="", repr=False)
    actual_text: str = field(default="", repr=False)


def ignored_result() -> CompareResult:
    return CompareResult(
        equal=True,
        message=IGNORED_MESSAGE,
        code=ErrorCode.EXPECTED_FILE_MISSING,
        ignored=True,
    )


def passed(message: str = "Match") -> CompareResult:
    return CompareResult(equal=True, message=message)


def failed(code: ErrorCode, message: str) -> CompareResult:
    return CompareResult(equal=False, message=message, code=code)


def is_blank(value: str | int | None) -> bool:
    if value is None:
        return True
    text = str(value).strip()
    return not text or text == MISSING_PLACEHOLDER


def expected_file_missing(expected: str | Path | None) -> bool:
    """True when an expected path is absent, blank, a placeholder or nonexistent."""
    if expected is None or is_blank(str(expected)):
        return True
    return not Path(str(expected).strip()).is_file()


def read_actual_text(actual: str | Path | None, store: CaptureStore | None) -> str | None:
    """Load the actual operand from a capture reference or a file.

    Returns None when nothing was captured or the file does not exist.
    """
    if actual is None or is_blank(str(actual)):
        return None
    if is_memory_ref(str(actual)):
        if store is None:
            return None
        return store.try_get_captured_output(str(actual).strip())
    path = Path(str(actual).strip())
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8", errors="replace")


def read_actual_bytes(actual: str | Path | None, store: CaptureStore | None) -> bytes | None:
    if actual is not None and not is_memory_ref(str(actual)):
        path = Path(str(actual).strip())
        return path.read_bytes() if path.is_file() else None
    text = read_actual_text(actual, store)
    return text.encode("utf-8") if text is not None else None


def actual_missing(actual: str | Path | None) -> CompareResult:
    return failed(ErrorCode.ACTUAL_FILE_MISSING, f"Actual output missing: {actual}")
