"""Tests for the error taxonomy."""

import pytest

from stepgrader.errors import (
    ErrorCategory,
    ErrorCode,
    ExecutableMissingError,
    GradingError,
    ProcessKillError,
    category_of,
    describe,
)


@pytest.mark.parametrize("code", list(ErrorCode))
def test_every_code_has_exactly_one_category(code):
    assert isinstance(category_of(code), ErrorCategory)


def test_categories_of_representative_codes():
    assert category_of(ErrorCode.OK) is ErrorCategory.NONE
    assert category_of(ErrorCode.SKIPPED) is ErrorCategory.NONE
    assert category_of(ErrorCode.UNSUPPORTED_ACTION) is ErrorCategory.PARSE
    assert category_of(ErrorCode.SERVER_EXE_MISSING) is ErrorCategory.PROCESS
    assert category_of(ErrorCode.HTTP_REQUEST_INVALID) is ErrorCategory.NETWORK
    assert category_of(ErrorCode.PERMISSION_DENIED) is ErrorCategory.IO
    assert category_of(ErrorCode.FILE_SIZE_MISMATCH) is ErrorCategory.COMPARE
    assert category_of(ErrorCode.BYTE_SIZE_MISMATCH) is ErrorCategory.COMPARE
    assert category_of(ErrorCode.STEP_TIMEOUT) is ErrorCategory.TIMEOUT
    assert category_of(ErrorCode.TIMEOUT) is ErrorCategory.TIMEOUT
    assert category_of(ErrorCode.UNKNOWN_EXCEPTION) is ErrorCategory.UNKNOWN


@pytest.mark.parametrize("code", list(ErrorCode))
def test_describe_has_title_for_every_code(code):
    info = describe(code)
    assert info.code is code
    assert info.title
    assert info.category is category_of(code)


def test_grading_error_default_and_explicit_code():
    assert GradingError("boom").code is ErrorCode.UNKNOWN
    assert ProcessKillError("nope").code is ErrorCode.KILL_ALL_FAILED

    err = ExecutableMissingError("missing", ErrorCode.SERVER_EXE_MISSING)
    assert err.code is ErrorCode.SERVER_EXE_MISSING
    assert err.category is ErrorCategory.PROCESS
    assert str(err) == "missing"
