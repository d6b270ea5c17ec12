"""Comparison engine: pure verdict functions for expected vs. actual artifacts."""

from stepgrader.comparison.base import (
    IGNORED_MESSAGE,
    CompareResult,
    TextCompareResult,
)
from stepgrader.comparison.content import (
    compare_csv,
    compare_csv_content,
    compare_file,
    compare_json,
    compare_json_content,
    compare_text,
    compare_text_content,
    normalize_text,
    write_text_diff,
)
from stepgrader.comparison.http import (
    compare_byte_size,
    compare_data_type,
    compare_http_method,
    compare_status_code,
    detect_data_type,
    is_byte_size_within_tolerance,
    normalize_status_code,
)

__all__ = [
    "IGNORED_MESSAGE",
    "CompareResult",
    "TextCompareResult",
    "compare_byte_size",
    "compare_csv",
    "compare_csv_content",
    "compare_data_type",
    "compare_file",
    "compare_http_method",
    "compare_json",
    "compare_json_content",
    "compare_status_code",
    "compare_text",
    "compare_text_content",
    "detect_data_type",
    "is_byte_size_within_tolerance",
    "normalize_status_code",
    "normalize_text",
    "write_text_diff",
]
