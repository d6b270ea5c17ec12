"""HTTP metadata comparisons: method, status code, byte size and data type."""

from __future__ import annotations

import csv
import io
import json

from stepgrader.comparison.base import (
    CompareResult,
    failed,
    ignored_result,
    is_blank,
    passed,
)
from stepgrader.errors import ErrorCode

BYTE_TOLERANCE_ABSOLUTE = 10
BYTE_TOLERANCE_RELATIVE = 0.05

_STATUS_BY_NUMBER = {
    200: "OK",
    201: "Created",
    204: "NoContent",
    400: "BadRequest",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    500: "InternalServerError",
}

# Checked in order against the upper-cased text; "OK" must stay last.
_STATUS_BY_TEXT = (
    (("INTERNALSERVERERROR", "INTERNAL SERVER ERROR"), "InternalServerError"),
    (("NOCONTENT", "NO CONTENT"), "NoContent"),
    (("BADREQUEST", "BAD REQUEST"), "BadRequest"),
    (("UNAUTHORIZED",), "Unauthorized"),
    (("FORBIDDEN",), "Forbidden"),
    (("NOTFOUND", "NOT FOUND"), "NotFound"),
    (("CREATED",), "Created"),
    (("OK",), "OK"),
)


def normalize_status_code(status: str | int | None) -> str:
    """Map a status code or reason phrase to a canonical label.

    "200", 200 and "OK" all map to "OK"; "404 Not Found" maps to "NotFound".
    A blank status means the request completed and maps to "OK". Anything
    unrecognized is returned trimmed.
    """
    text = "" if status is None else str(status).strip()
    if not text:
        return "OK"
    if text.isdigit():
        return _STATUS_BY_NUMBER.get(int(text), text)
    upper = text.upper()
    for needles, label in _STATUS_BY_TEXT:
        if any(needle in upper for needle in needles):
            return label
    return text


def compare_http_method(expected: str | None, actual: str | None) -> CompareResult:
    if is_blank(expected):
        return ignored_result()
    if actual is None or not actual.strip():
        return failed(ErrorCode.ACTUAL_FILE_MISSING, "No HTTP method was captured")
    if expected.strip().upper() == actual.strip().upper():
        return passed(f"HTTP method {actual.strip().upper()} matches")
    return failed(
        ErrorCode.HTTP_METHOD_MISMATCH,
        f"HTTP method differs: expected {expected.strip().upper()}, "
        f"got {actual.strip().upper()}",
    )


def compare_status_code(
    expected: str | int | None, actual: str | int | None
) -> CompareResult:
    if is_blank(expected):
        return ignored_result()
    if actual is None:
        return failed(ErrorCode.ACTUAL_FILE_MISSING, "No status code was captured")
    expected_label = normalize_status_code(expected)
    actual_label = normalize_status_code(actual)
    if expected_label == actual_label:
        return passed(f"Status {actual_label} matches")
    return failed(
        ErrorCode.STATUS_CODE_MISMATCH,
        f"Status differs: expected {expected_label}, got {actual_label}",
    )


def is_byte_size_within_tolerance(expected: int, actual: int) -> bool:
    """Equal, within 10 bytes, or within 5% of expected.

    An expected size of 0 accepts any actual of at most 10 bytes.
    """
    if expected == actual:
        return True
    if expected == 0:
        return actual <= BYTE_TOLERANCE_ABSOLUTE
    diff = abs(expected - actual)
    if diff <= BYTE_TOLERANCE_ABSOLUTE:
        return True
    return diff / abs(expected) <= BYTE_TOLERANCE_RELATIVE


def compare_byte_size(expected: str | int | None, actual: int | None) -> CompareResult:
    if is_blank(expected):
        return ignored_result()
    try:
        expected_size = int(str(expected).strip())
    except ValueError:
        return failed(
            ErrorCode.BYTE_SIZE_MISMATCH, f"Expected byte size is not a number: {expected}"
        )
    if actual is None:
        return failed(ErrorCode.ACTUAL_FILE_MISSING, "No byte size was captured")
    if is_byte_size_within_tolerance(expected_size, actual):
        return passed(f"Byte size {actual} within tolerance of {expected_size}")
    return failed(
        ErrorCode.BYTE_SIZE_MISMATCH,
        f"Byte size differs: expected {expected_size}, got {actual}",
    )


def _looks_like_csv(text: str) -> bool:
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        return False
    widths = {len(row) for row in csv.reader(io.StringIO("\n".join(lines)))}
    return len(widths) == 1 and widths.pop() > 1


def detect_data_type(content: str | None) -> str:
    """Classify a payload as JSON, XML, CSV, Text or Empty."""
    text = (content or "").strip()
    if not text:
        return "Empty"
    if text[0] in "{[":
        try:
            json.loads(text)
            return "JSON"
        except json.JSONDecodeError:
            pass
    if text.startswith("<") and text.endswith(">"):
        return "XML"
    if _looks_like_csv(text):
        return "CSV"
    return "Text"


def compare_data_type(expected: str | None, content: str | None) -> CompareResult:
    if is_blank(expected):
        return ignored_result()
    detected = detect_data_type(content)
    if detected.lower() == expected.strip().lower():
        return passed(f"Data type {detected} matches")
    return failed(
        ErrorCode.DATA_TYPE_MISMATCH,
        f"Data type differs: expected {expected.strip()}, got {detected}",
    )
