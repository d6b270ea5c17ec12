"""Content comparisons: files, normalized text, JSON and CSV."""

from __future__ import annotations

import csv
import difflib
import hashlib
import io
import json
from collections import Counter
from pathlib import Path
from typing import Any

from stepgrader.capture import CaptureStore
from stepgrader.comparison.base import (
    CompareResult,
    TextCompareResult,
    actual_missing,
    expected_file_missing,
    failed,
    ignored_result,
    passed,
    read_actual_bytes,
    read_actual_text,
)
from stepgrader.errors import ErrorCode

CONTEXT_PADDING = 24


def _read_expected(expected: str | Path) -> str:
    return Path(str(expected).strip()).read_text(encoding="utf-8", errors="replace")


# --- file ---


def compare_file(
    expected: str | Path | None,
    actual: str | Path | None,
    store: CaptureStore | None = None,
) -> CompareResult:
    """Byte-exact comparison: size first, then SHA-256."""
    if expected_file_missing(expected):
        return ignored_result()

    actual_bytes = read_actual_bytes(actual, store)
    if actual_bytes is None:
        return actual_missing(actual)

    expected_bytes = Path(str(expected).strip()).read_bytes()
    if len(expected_bytes) != len(actual_bytes):
        return failed(
            ErrorCode.FILE_SIZE_MISMATCH,
            f"Size differs: expected {len(expected_bytes)} bytes, got {len(actual_bytes)}",
        )
    if hashlib.sha256(expected_bytes).digest() != hashlib.sha256(actual_bytes).digest():
        return failed(ErrorCode.FILE_HASH_MISMATCH, "Content differs")
    return passed("Files are identical")


# --- text ---


def normalize_text(text: str | None, case_insensitive: bool = True) -> str:
    """Strip every newline character, trim, and optionally casefold."""
    normalized = (text or "").replace("\r", "").replace("\n", "").strip()
    return normalized.lower() if case_insensitive else normalized


def _context(text: str, index: int) -> str:
    start = max(0, index - CONTEXT_PADDING)
    end = min(len(text), index + CONTEXT_PADDING)
    return f"{text[start:end]}\n{' ' * (index - start)}^"


def compare_text_content(
    expected: str, actual: str, case_insensitive: bool = True
) -> TextCompareResult:
    """Compare two strings after newline-insensitive normalization."""
    norm_expected = normalize_text(expected, case_insensitive)
    norm_actual = normalize_text(actual, case_insensitive)

    if norm_expected == norm_actual:
        return TextCompareResult(
            equal=True,
            message="Text matches",
            normalized_expected=norm_expected,
            normalized_actual=norm_actual,
            expected_text=expected,
            actual_text=actual,
        )

    index = next(
        (i for i, (a, b) in enumerate(zip(norm_expected, norm_actual)) if a != b),
        min(len(norm_expected), len(norm_actual)),
    )
    exp_char = repr(norm_expected[index]) if index < len(norm_expected) else "<end>"
    act_char = repr(norm_actual[index]) if index < len(norm_actual) else "<end>"
    return TextCompareResult(
        equal=False,
        message=f"Text differs at index {index}: expected {exp_char}, got {act_char}",
        code=ErrorCode.TEXT_MISMATCH,
        first_diff_index=index,
        expected_context=_context(norm_expected, index),
        actual_context=_context(norm_actual, index),
        normalized_expected=norm_expected,
        normalized_actual=norm_actual,
        expected_text=expected,
        actual_text=actual,
    )


def compare_text(
    expected: str | Path | None,
    actual: str | Path | None,
    store: CaptureStore | None = None,
    case_insensitive: bool = True,
) -> CompareResult:
    """Compare an expected text file with a captured or written actual."""
    if expected_file_missing(expected):
        return ignored_result()

    actual_text = read_actual_text(actual, store)
    if actual_text is None:
        return actual_missing(actual)

    return compare_text_content(_read_expected(expected), actual_text, case_insensitive)


def write_text_diff(result: TextCompareResult, path: Path) -> Path:
    """Write a unified diff plus first-difference context for a text mismatch."""
    lines = [
        result.message,
        "",
        "--- expected (normalized)",
        result.expected_context,
        "--- actual (normalized)",
        result.actual_context,
        "",
    ]
    diff = difflib.unified_diff(
        result.expected_text.splitlines(),
        result.actual_text.splitlines(),
        fromfile="expected",
        tofile="actual",
        lineterm="",
    )
    lines.extend(diff)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


# --- JSON ---


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def canonical_json(value: Any, ignore_order: bool = True) -> Any:
    """Return a canonical form: keys are sorted on dump, arrays optionally sorted."""
    if isinstance(value, dict):
        return {k: canonical_json(v, ignore_order) for k, v in value.items()}
    if isinstance(value, list):
        items = [canonical_json(v, ignore_order) for v in value]
        if ignore_order:
            items.sort(key=_sort_key)
        return items
    return value


def _first_difference(expected: Any, actual: Any, path: str = "$") -> str | None:
    if type(expected) is not type(actual):
        return (
            f"{path}: expected {type(expected).__name__}, "
            f"got {type(actual).__name__}"
        )
    if isinstance(expected, dict):
        for key in sorted(set(expected) | set(actual)):
            if key not in actual:
                return f"{path}.{key}: missing"
            if key not in expected:
                return f"{path}.{key}: unexpected"
            found = _first_difference(expected[key], actual[key], f"{path}.{key}")
            if found:
                return found
        return None
    if isinstance(expected, list):
        if len(expected) != len(actual):
            return f"{path}: expected {len(expected)} items, got {len(actual)}"
        for i, (e, a) in enumerate(zip(expected, actual)):
            found = _first_difference(e, a, f"{path}[{i}]")
            if found:
                return found
        return None
    if expected != actual:
        return f"{path}: expected {expected!r}, got {actual!r}"
    return None


def json_equal(expected: Any, actual: Any, ignore_order: bool = True) -> bool:
    """Structural equality that keeps number, string and bool types apart."""
    return _sort_key(canonical_json(expected, ignore_order)) == _sort_key(
        canonical_json(actual, ignore_order)
    )


def compare_json_content(
    expected: str, actual: str, ignore_order: bool = True
) -> CompareResult:
    try:
        expected_doc = json.loads(expected)
    except json.JSONDecodeError as e:
        return failed(ErrorCode.JSON_MISMATCH, f"Expected is not valid JSON: {e}")
    try:
        actual_doc = json.loads(actual)
    except json.JSONDecodeError as e:
        return failed(ErrorCode.JSON_MISMATCH, f"Actual is not valid JSON: {e}")

    if json_equal(expected_doc, actual_doc, ignore_order):
        return passed("JSON matches")

    where = _first_difference(
        canonical_json(expected_doc, ignore_order), canonical_json(actual_doc, ignore_order)
    )
    return failed(ErrorCode.JSON_MISMATCH, f"JSON differs at {where}")


def compare_json(
    expected: str | Path | None,
    actual: str | Path | None,
    store: CaptureStore | None = None,
    ignore_order: bool = True,
) -> CompareResult:
    if expected_file_missing(expected):
        return ignored_result()

    actual_text = read_actual_text(actual, store)
    if actual_text is None:
        return actual_missing(actual)

    return compare_json_content(_read_expected(expected), actual_text, ignore_order)


# --- CSV ---


def parse_csv_rows(text: str) -> list[tuple[str, ...]]:
    """Parse CSV text into trimmed rows, dropping blank lines."""
    rows = []
    for row in csv.reader(io.StringIO(text)):
        cells = tuple(cell.strip() for cell in row)
        if any(cells):
            rows.append(cells)
    return rows


def csv_rows_equal(
    expected: list[tuple[str, ...]],
    actual: list[tuple[str, ...]],
    ignore_order: bool = True,
) -> bool:
    if ignore_order:
        return Counter(expected) == Counter(actual)
    return expected == actual


def compare_csv_content(
    expected: str, actual: str, ignore_order: bool = True, has_header: bool = True
) -> CompareResult:
    expected_rows = parse_csv_rows(expected)
    actual_rows = parse_csv_rows(actual)

    if has_header and expected_rows:
        expected_header = expected_rows.pop(0)
        actual_header = actual_rows.pop(0) if actual_rows else ()
        if expected_header != actual_header:
            return failed(
                ErrorCode.CSV_MISMATCH,
                f"Header differs: expected {list(expected_header)}, "
                f"got {list(actual_header)}",
            )

    if csv_rows_equal(expected_rows, actual_rows, ignore_order):
        return passed("CSV matches")

    if len(expected_rows) != len(actual_rows):
        return failed(
            ErrorCode.CSV_MISMATCH,
            f"Row count differs: expected {len(expected_rows)}, got {len(actual_rows)}",
        )
    if ignore_order:
        missing = Counter(expected_rows) - Counter(actual_rows)
        row = next(iter(missing))
        return failed(ErrorCode.CSV_MISMATCH, f"Row not found in actual: {list(row)}")
    index = next(i for i, (e, a) in enumerate(zip(expected_rows, actual_rows)) if e != a)
    return failed(
        ErrorCode.CSV_MISMATCH,
        f"Row {index + 1} differs: expected {list(expected_rows[index])}, "
        f"got {list(actual_rows[index])}",
    )


def compare_csv(
    expected: str | Path | None,
    actual: str | Path | None,
    store: CaptureStore | None = None,
    ignore_order: bool = True,
    has_header: bool = True,
) -> CompareResult:
    if expected_file_missing(expected):
        return ignored_result()

    actual_text = read_actual_text(actual, store)
    if actual_text is None:
        return actual_missing(actual)

    return compare_csv_content(
        _read_expected(expected), actual_text, ignore_order, has_header
    )
