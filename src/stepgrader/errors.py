"""Closed error taxonomy for grading results.

Every ``ErrorCode`` belongs to exactly one ``ErrorCategory``. Step failures are
reported through these codes; exceptions raised inside the grading core carry
one so the executor can turn them into a result without inspecting messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    NONE = "None"
    SUITE = "Suite"
    PARSE = "Parse"
    ENV = "Env"
    PROCESS = "Process"
    NETWORK = "Network"
    IO = "IO"
    COMPARE = "Compare"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class ErrorCode(str, Enum):
    OK = "OK"
    SKIPPED = "SKIPPED"
    INPUT_VALIDATION_SKIPPED = "INPUT_VALIDATION_SKIPPED"

    SUITE_LOAD_FAILED = "SUITE_LOAD_FAILED"
    HEADER_MISSING = "HEADER_MISSING"
    NO_TEST_CASES = "NO_TEST_CASES"
    STEP_PARSE_ERROR = "STEP_PARSE_ERROR"

    UNSUPPORTED_ACTION = "UNSUPPORTED_ACTION"

    DB_RESET_FAILED = "DB_RESET_FAILED"
    APPSETTINGS_REPLACE_FAILED = "APPSETTINGS_REPLACE_FAILED"

    CLIENT_EXE_MISSING = "CLIENT_EXE_MISSING"
    SERVER_EXE_MISSING = "SERVER_EXE_MISSING"
    PROCESS_CRASHED = "PROCESS_CRASHED"
    KILL_ALL_FAILED = "KILL_ALL_FAILED"
    SERVER_START_TIMEOUT = "SERVER_START_TIMEOUT"
    PORT_NOT_LISTENING = "PORT_NOT_LISTENING"
    PROXY_START_FAILED = "PROXY_START_FAILED"

    HTTP_REQUEST_INVALID = "HTTP_REQUEST_INVALID"
    HTTP_NON_SUCCESS = "HTTP_NON_SUCCESS"
    TCP_RELAY_ERROR = "TCP_RELAY_ERROR"
    MIDDLEWARE_ERROR = "MIDDLEWARE_ERROR"

    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    ACTUAL_FILE_MISSING = "ACTUAL_FILE_MISSING"
    EXPECTED_FILE_MISSING = "EXPECTED_FILE_MISSING"
    FILE_COPY_FAILED = "FILE_COPY_FAILED"
    PATH_NOT_FOUND = "PATH_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    TEXT_MISMATCH = "TEXT_MISMATCH"
    JSON_MISMATCH = "JSON_MISMATCH"
    CSV_MISMATCH = "CSV_MISMATCH"
    FILE_SIZE_MISMATCH = "FILE_SIZE_MISMATCH"
    FILE_HASH_MISMATCH = "FILE_HASH_MISMATCH"
    HTTP_METHOD_MISMATCH = "HTTP_METHOD_MISMATCH"
    STATUS_CODE_MISMATCH = "STATUS_CODE_MISMATCH"
    BYTE_SIZE_MISMATCH = "BYTE_SIZE_MISMATCH"
    DATA_TYPE_MISMATCH = "DATA_TYPE_MISMATCH"

    TIMEOUT = "TIMEOUT"
    STEP_TIMEOUT = "STEP_TIMEOUT"

    UNKNOWN = "UNKNOWN"
    UNKNOWN_EXCEPTION = "UNKNOWN_EXCEPTION"


_C = ErrorCode

_CATEGORIES: dict[ErrorCategory, tuple[ErrorCode, ...]] = {
    ErrorCategory.NONE: (_C.OK, _C.SKIPPED, _C.INPUT_VALIDATION_SKIPPED),
    ErrorCategory.SUITE: (
        _C.SUITE_LOAD_FAILED,
        _C.HEADER_MISSING,
        _C.NO_TEST_CASES,
        _C.STEP_PARSE_ERROR,
    ),
    ErrorCategory.PARSE: (_C.UNSUPPORTED_ACTION,),
    ErrorCategory.ENV: (_C.DB_RESET_FAILED, _C.APPSETTINGS_REPLACE_FAILED),
    ErrorCategory.PROCESS: (
        _C.CLIENT_EXE_MISSING,
        _C.SERVER_EXE_MISSING,
        _C.PROCESS_CRASHED,
        _C.KILL_ALL_FAILED,
        _C.SERVER_START_TIMEOUT,
        _C.PORT_NOT_LISTENING,
        _C.PROXY_START_FAILED,
    ),
    ErrorCategory.NETWORK: (
        _C.HTTP_REQUEST_INVALID,
        _C.HTTP_NON_SUCCESS,
        _C.TCP_RELAY_ERROR,
        _C.MIDDLEWARE_ERROR,
    ),
    ErrorCategory.IO: (
        _C.FILE_NOT_FOUND,
        _C.ACTUAL_FILE_MISSING,
        _C.EXPECTED_FILE_MISSING,
        _C.FILE_COPY_FAILED,
        _C.PATH_NOT_FOUND,
        _C.PERMISSION_DENIED,
    ),
    ErrorCategory.COMPARE: (
        _C.TEXT_MISMATCH,
        _C.JSON_MISMATCH,
        _C.CSV_MISMATCH,
        _C.FILE_SIZE_MISMATCH,
        _C.FILE_HASH_MISMATCH,
        _C.HTTP_METHOD_MISMATCH,
        _C.STATUS_CODE_MISMATCH,
        _C.BYTE_SIZE_MISMATCH,
        _C.DATA_TYPE_MISMATCH,
    ),
    ErrorCategory.TIMEOUT: (_C.TIMEOUT, _C.STEP_TIMEOUT),
    ErrorCategory.UNKNOWN: (_C.UNKNOWN, _C.UNKNOWN_EXCEPTION),
}

CODE_CATEGORY: dict[ErrorCode, ErrorCategory] = {
    code: category for category, codes in _CATEGORIES.items() for code in codes
}


def category_of(code: ErrorCode) -> ErrorCategory:
    """Return the category of an error code.

    Raises KeyError for a code that was added to the enum without a category,
    which the taxonomy tests guard against.
    """
    return CODE_CATEGORY[code]


@dataclass(frozen=True)
class ErrorInfo:
    code: ErrorCode
    category: ErrorCategory
    title: str
    description: str


_DESCRIPTIONS: dict[ErrorCode, tuple[str, str]] = {
    _C.OK: ("OK", "Step passed."),
    _C.SKIPPED: ("Skipped", "Step was gated off by the grading configuration."),
    _C.INPUT_VALIDATION_SKIPPED: (
        "Input validation skipped",
        "Text assertions on INPUT stages cannot be verified and are not scored.",
    ),
    _C.SUITE_LOAD_FAILED: ("Suite load failed", "The suite file could not be read."),
    _C.HEADER_MISSING: ("Header missing", "A required suite section is absent."),
    _C.NO_TEST_CASES: ("No test cases", "The suite does not define any case."),
    _C.STEP_PARSE_ERROR: ("Step parse error", "A step definition is malformed."),
    _C.UNSUPPORTED_ACTION: (
        "Unsupported action",
        "The step action is not part of the action vocabulary.",
    ),
    _C.DB_RESET_FAILED: ("Database reset failed", "Environment reset did not complete."),
    _C.APPSETTINGS_REPLACE_FAILED: (
        "Settings replace failed",
        "Submission settings could not be replaced before the run.",
    ),
    _C.CLIENT_EXE_MISSING: ("Client missing", "The client executable does not exist."),
    _C.SERVER_EXE_MISSING: ("Server missing", "The server executable does not exist."),
    _C.PROCESS_CRASHED: ("Process crashed", "A submission process exited unexpectedly."),
    _C.KILL_ALL_FAILED: ("Kill failed", "Submission processes could not be stopped."),
    _C.SERVER_START_TIMEOUT: (
        "Server start timeout",
        "The server did not become ready in time.",
    ),
    _C.PORT_NOT_LISTENING: ("Port not listening", "Nothing accepted connections."),
    _C.PROXY_START_FAILED: (
        "Proxy start failed",
        "The traffic middleware could not bind its port.",
    ),
    _C.HTTP_REQUEST_INVALID: (
        "Invalid HTTP request",
        "The HTTP step value needs at least METHOD|URL.",
    ),
    _C.HTTP_NON_SUCCESS: (
        "HTTP non-success",
        "The response status did not match the expected status.",
    ),
    _C.TCP_RELAY_ERROR: ("TCP relay error", "The TCP relay could not proxy traffic."),
    _C.MIDDLEWARE_ERROR: ("Middleware error", "The traffic middleware failed."),
    _C.FILE_NOT_FOUND: ("File not found", "A referenced file does not exist."),
    _C.ACTUAL_FILE_MISSING: (
        "Actual output missing",
        "No actual output was captured or written for this step.",
    ),
    _C.EXPECTED_FILE_MISSING: (
        "Expected output missing",
        "No expected output exists; the step is ignored.",
    ),
    _C.FILE_COPY_FAILED: ("File copy failed", "Capturing a file failed."),
    _C.PATH_NOT_FOUND: ("Path not found", "A directory in the path does not exist."),
    _C.PERMISSION_DENIED: ("Permission denied", "The file system refused access."),
    _C.TEXT_MISMATCH: ("Text mismatch", "Normalized text differs."),
    _C.JSON_MISMATCH: ("JSON mismatch", "JSON documents are not structurally equal."),
    _C.CSV_MISMATCH: ("CSV mismatch", "CSV rows differ."),
    _C.FILE_SIZE_MISMATCH: ("File size mismatch", "File sizes differ."),
    _C.FILE_HASH_MISMATCH: ("File hash mismatch", "File contents differ."),
    _C.HTTP_METHOD_MISMATCH: ("HTTP method mismatch", "A different method was used."),
    _C.STATUS_CODE_MISMATCH: (
        "Status code mismatch",
        "The response status differs from the expected status.",
    ),
    _C.BYTE_SIZE_MISMATCH: (
        "Byte size mismatch",
        "The payload size is outside the accepted tolerance.",
    ),
    _C.DATA_TYPE_MISMATCH: ("Data type mismatch", "The payload has a different format."),
    _C.TIMEOUT: ("Timeout", "The run was cancelled while the step was in progress."),
    _C.STEP_TIMEOUT: ("Step timeout", "The step exceeded the stage timeout."),
    _C.UNKNOWN: ("Unknown", "Unclassified failure."),
    _C.UNKNOWN_EXCEPTION: ("Unknown exception", "An unexpected exception was raised."),
}


def describe(code: ErrorCode) -> ErrorInfo:
    """Return human-readable information about an error code."""
    title, description = _DESCRIPTIONS.get(code, (code.value, ""))
    return ErrorInfo(
        code=code, category=category_of(code), title=title, description=description
    )


class GradingError(Exception):
    """Base class for failures that carry a grading error code."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def category(self) -> ErrorCategory:
        return category_of(self.code)


class SuiteLoadError(GradingError):
    code = ErrorCode.SUITE_LOAD_FAILED


class UnsupportedActionError(GradingError):
    code = ErrorCode.UNSUPPORTED_ACTION


class ExecutableMissingError(GradingError):
    code = ErrorCode.CLIENT_EXE_MISSING


class ProcessKillError(GradingError):
    code = ErrorCode.KILL_ALL_FAILED


class HttpSpecError(GradingError):
    code = ErrorCode.HTTP_REQUEST_INVALID


class MiddlewareError(GradingError):
    code = ErrorCode.MIDDLEWARE_ERROR
