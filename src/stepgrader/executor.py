"""Step executor: interprets one scripted step and produces a scored result."""

from __future__ import annotations

import asyncio
import http.client
import logging
import shutil
import time
import urllib.error
import urllib.request
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stepgrader.capture import CaptureKey, CaptureStore, Channel, is_memory_ref
from stepgrader.comparison import (
    CompareResult,
    TextCompareResult,
    compare_byte_size,
    compare_csv,
    compare_data_type,
    compare_file,
    compare_http_method,
    compare_json,
    compare_status_code,
    compare_text,
    normalize_status_code,
    normalize_text,
    write_text_diff,
)
from stepgrader.comparison.base import IGNORED_MESSAGE, is_blank, read_actual_text
from stepgrader.config import (
    CLIENT_SHEET_PREFIX,
    SERVER_SHEET_PREFIX,
    Action,
    ExecuteSuiteArgs,
    GradingConfig,
    Stage,
    Step,
    ValidationKind,
)
from stepgrader.errors import (
    ErrorCategory,
    ErrorCode,
    GradingError,
    HttpSpecError,
    MiddlewareError,
    ProcessKillError,
    UnsupportedActionError,
    category_of,
)
from stepgrader.middleware import TrafficMiddleware
from stepgrader.process import ManagedProcess, ProcessManager
from stepgrader.workspace import mismatch_path

DEFAULT_WAIT_MS = 1000
PROBE_TIMEOUT_SECONDS = 0.2
CRASH_PREVIEW_CHARS = 400
CLIENT_SETTLE_SECONDS = 0.5
PUMP_FLUSH_SECONDS = 1.0


@dataclass(frozen=True)
class StepResult:
    """Scored outcome of one step. Exactly one is produced per executed step."""

    step: Step
    ok: bool
    message: str
    points_awarded: float = 0.0
    points_possible: float = 0.0
    error_code: ErrorCode = ErrorCode.OK
    duration_ms: float = 0.0
    detail_path: Path | None = None
    actual_path: str | None = None

    @property
    def error_category(self) -> ErrorCategory:
        return category_of(self.error_code)

    @property
    def skipped(self) -> bool:
        return self.error_code in (ErrorCode.SKIPPED, ErrorCode.INPUT_VALIDATION_SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step.id,
            "action": self.step.action,
            "question": self.step.question_code,
            "stage": self.step.stage_label,
            "ok": self.ok,
            "message": self.message,
            "points_awarded": self.points_awarded,
            "points_possible": self.points_possible,
            "error_code": self.error_code.value,
            "error_category": self.error_category.value,
            "duration_ms": round(self.duration_ms, 1),
            "detail_path": str(self.detail_path) if self.detail_path else None,
            "actual_path": self.actual_path,
        }


@dataclass
class _Outcome:
    ok: bool
    message: str
    code: ErrorCode = ErrorCode.OK
    points_possible: float | None = None
    detail_path: Path | None = None
    actual_path: str | None = None


class StepCancelled(Exception):
    """Raised when the run's cancel event fires while a step is in flight."""


Handler = Callable[[Step, ExecuteSuiteArgs], Awaitable[_Outcome]]


def channel_for_step(step: Step) -> Channel:
    """Capture channel holding the actual output of a step."""
    tokens = set(step.kind.split("-"))
    prefix = step.sheet_prefix
    if prefix == SERVER_SHEET_PREFIX and "REQ" in tokens:
        return Channel.SERVER_REQUEST
    if prefix == CLIENT_SHEET_PREFIX and tokens & {"DATA", "TYPE"}:
        return Channel.SERVER_RESPONSE
    if prefix == SERVER_SHEET_PREFIX and "TYPE" in tokens:
        return Channel.SERVER_REQUEST
    if prefix == SERVER_SHEET_PREFIX:
        return Channel.SERVER_OUTPUT
    return Channel.CLIENT_OUTPUT


def parse_http_spec(value: str | None) -> tuple[str, str, str | None, str | None]:
    """Split ``METHOD|URL[|EXPECTED_STATUS][|EXPECTED_BODY_SUBSTRING]``."""
    parts = [p.strip() for p in (value or "").split("|", 3)]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise HttpSpecError(f"HTTP step needs METHOD|URL, got {value!r}")
    status = parts[2] if len(parts) > 2 and parts[2] else None
    body = parts[3] if len(parts) > 3 and parts[3] else None
    return parts[0].upper(), parts[1], status, body


def _http_call(method: str, url: str, timeout: float) -> tuple[int, bytes]:
    request = urllib.request.Request(url, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status, response.read()
    except urllib.error.HTTPError as e:
        return e.code, e.read()


class StepExecutor:
    """Runs steps against the process manager, the capture store and the relay."""

    def __init__(
        self,
        processes: ProcessManager,
        store: CaptureStore,
        grading: GradingConfig,
        args: ExecuteSuiteArgs,
        middleware: TrafficMiddleware | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.processes = processes
        self.store = store
        self.grading = grading
        self.args = args
        self.middleware = middleware
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: dict[Action, Handler] = {
            Action.CLIENT_START: self._client_start,
            Action.SERVER_START: self._server_start,
            Action.CLIENT_CLOSE: self._client_close,
            Action.SERVER_CLOSE: self._server_close,
            Action.KILL_ALL: self._kill_all,
            Action.RUN_CLIENT: self._client_start,
            Action.RUN_SERVER: self._run_server,
            Action.WAIT: self._wait,
            Action.HTTP_REQUEST: self._http_request,
            Action.ASSERT_TEXT: self._assert_text,
            Action.CAPTURE_FILE: self._capture_file,
            Action.COMPARE_FILE: self._compare,
            Action.COMPARE_TEXT: self._compare,
            Action.COMPARE_JSON: self._compare,
            Action.COMPARE_CSV: self._compare,
            Action.TCP_RELAY: self._tcp_relay,
            Action.CLIENT_INPUT: self._client_input,
        }

    async def execute(
        self,
        step: Step,
        args: ExecuteSuiteArgs | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StepResult:
        """Execute one step. Never raises for step-level failures."""
        args = args or self.args
        started = time.perf_counter()

        if not self.grading.should_grade_step(step.id):
            return self._finish(
                step,
                _Outcome(True, "Sheet is not graded", ErrorCode.SKIPPED, 0),
                started,
            )
        kind = step.validation_kind
        if not self.grading.is_enabled(kind):
            return self._finish(
                step,
                _Outcome(True, f"{kind.value} validation disabled", ErrorCode.SKIPPED, 0),
                started,
            )

        try:
            action = Action.parse(step.action)
        except UnsupportedActionError as e:
            return self._finish(step, _Outcome(False, str(e), e.code, 0), started)

        handler = self._handlers[action]
        try:
            outcome = await self._run_with_deadline(
                handler(step, args), args.stage_timeout_seconds, cancel_event
            )
        except StepCancelled:
            outcome = _Outcome(False, "Step cancelled", ErrorCode.TIMEOUT)
        except asyncio.TimeoutError:
            outcome = _Outcome(
                False,
                f"Step exceeded {args.stage_timeout_seconds:g}s timeout",
                ErrorCode.STEP_TIMEOUT,
            )
        except GradingError as e:
            outcome = _Outcome(False, str(e), e.code)
        except urllib.error.URLError as e:
            outcome = _Outcome(False, f"HTTP request failed: {e.reason}", ErrorCode.HTTP_NON_SUCCESS)
        except http.client.HTTPException as e:
            outcome = _Outcome(
                False,
                f"Malformed HTTP response: {type(e).__name__}: {e}",
                ErrorCode.HTTP_NON_SUCCESS,
            )
        except FileNotFoundError as e:
            outcome = _Outcome(False, f"File not found: {e.filename}", ErrorCode.FILE_NOT_FOUND)
        except PermissionError as e:
            outcome = _Outcome(
                False, f"Permission denied: {e.filename}", ErrorCode.PERMISSION_DENIED
            )
        except Exception as e:
            self.logger.exception(f"[{step.id}] unexpected error in {step.action}")
            outcome = _Outcome(
                False, f"{type(e).__name__}: {e}", ErrorCode.UNKNOWN_EXCEPTION
            )

        if outcome.points_possible is None:
            outcome.points_possible = self._default_points(action, step)
        return self._finish(step, outcome, started)

    def _default_points(self, action: Action, step: Step) -> float:
        if action is Action.ASSERT_TEXT and step.stage is Stage.INPUT:
            return 0
        return 1 if action.is_scored else 0

    async def _run_with_deadline(
        self,
        coro: Awaitable[_Outcome],
        timeout: float,
        cancel_event: asyncio.Event | None,
    ) -> _Outcome:
        """Race a handler against the stage timeout and the run's cancel event."""
        task = asyncio.ensure_future(coro)
        cancel_waiter = None
        waiters = {task}
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug(f"Handler raised while cancelling: {task.exception()!r}")
        if cancel_waiter is not None and cancel_waiter in done:
            raise StepCancelled()
        raise asyncio.TimeoutError()

    def _finish(self, step: Step, outcome: _Outcome, started: float) -> StepResult:
        possible = outcome.points_possible or 0
        result = StepResult(
            step=step,
            ok=outcome.ok,
            message=outcome.message,
            points_awarded=possible if outcome.ok else 0,
            points_possible=possible,
            error_code=outcome.code,
            duration_ms=(time.perf_counter() - started) * 1000,
            detail_path=outcome.detail_path,
            actual_path=outcome.actual_path,
        )
        status = "PASS" if result.ok else "FAIL"
        if result.skipped:
            status = "SKIP"
        self.logger.info(
            f"[{step.id}] {status} {step.action}: {result.message} "
            f"({result.points_awarded:g}/{result.points_possible:g}, {result.error_code.value})"
        )
        return result

    # -- readiness -----------------------------------------------------------------

    async def _server_answers(self, args: ExecuteSuiteArgs) -> bool:
        if args.readiness_probe == "http":
            url = f"http://{args.host}:{args.server_port}{args.health_path}"
            try:
                status, _ = await asyncio.to_thread(
                    _http_call, "GET", url, PROBE_TIMEOUT_SECONDS
                )
            except (OSError, http.client.HTTPException):
                return False
            return 200 <= status < 300

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(args.host, args.server_port),
                timeout=PROBE_TIMEOUT_SECONDS,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        return True

    async def wait_until_ready(self, args: ExecuteSuiteArgs) -> bool:
        """Poll the server until it answers. Giving up is not fatal."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.server_ready_timeout
        while True:
            if not self.processes.is_server_running:
                return False
            if await self._server_answers(args):
                self.logger.debug("Server is ready")
                return True
            if loop.time() >= deadline:
                break
            await asyncio.sleep(args.ready_poll_interval)
        self.logger.warning(
            f"Server not ready on port {args.server_port} after "
            f"{args.server_ready_timeout:g}s; continuing"
        )
        return False

    async def _ensure_middleware(self, args: ExecuteSuiteArgs) -> None:
        if self.middleware is None or not args.use_middleware:
            return
        try:
            await self.middleware.start(args.use_http)
        except MiddlewareError as e:
            self.logger.warning(f"Traffic middleware unavailable: {e}")

    async def _crashed(self, handle: ManagedProcess | None, what: str) -> _Outcome:
        exit_code = None
        preview = ""
        if handle is not None:
            if handle.pumps:
                await asyncio.wait(handle.pumps, timeout=PUMP_FLUSH_SECONDS)
            exit_code = handle.returncode
            preview = handle.output()[-CRASH_PREVIEW_CHARS:].strip()
        message = f"{what} (exit code {exit_code})"
        if preview:
            message += f": {preview}"
        return _Outcome(False, message, ErrorCode.PROCESS_CRASHED)

    # -- process actions -------------------------------------------------------------

    async def _start_server_and_wait(
        self, args: ExecuteSuiteArgs, extra: list[str] | None = None
    ) -> _Outcome:
        await self.processes.start_server(extra)
        await self.wait_until_ready(args)
        if not self.processes.is_server_running:
            return await self._crashed(self.processes.server, "Server exited during startup")
        await self._ensure_middleware(args)
        return _Outcome(True, "Server started")

    async def _server_start(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        return await self._start_server_and_wait(args)

    async def _run_server(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        binding = ["--urls", f"http://{args.host}:{args.server_port}"]
        return await self._start_server_and_wait(args, binding)

    async def _client_start(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        if self.processes.server_path and not self.processes.is_server_running:
            await self.processes.start_server()
            await self.wait_until_ready(args)
        await self._ensure_middleware(args)
        client = await self.processes.start_client()
        try:
            await asyncio.wait_for(client.proc.wait(), timeout=CLIENT_SETTLE_SECONDS)
        except asyncio.TimeoutError:
            return _Outcome(True, "Client started")
        if client.returncode != 0:
            return await self._crashed(client, "Client exited right after start")
        return _Outcome(True, "Client ran to completion")

    async def _stop_middleware(self) -> None:
        if self.middleware is not None:
            await self.middleware.stop()

    async def _client_close(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        try:
            await self.processes.stop_client()
        except ProcessKillError as e:
            return _Outcome(True, f"Client stop failed: {e}", e.code)
        await self._stop_middleware()
        return _Outcome(True, "Client stopped")

    async def _server_close(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        try:
            await self.processes.stop_server()
        except ProcessKillError as e:
            return _Outcome(True, f"Server stop failed: {e}", e.code)
        await self._stop_middleware()
        return _Outcome(True, "Server stopped")

    async def _kill_all(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        try:
            await self.processes.stop_all()
        except ProcessKillError as e:
            self.logger.error(f"KillAll failed: {e}")
            return _Outcome(True, f"Kill failed: {e}", ErrorCode.KILL_ALL_FAILED)
        await self._stop_middleware()
        return _Outcome(True, "All processes stopped")

    async def _client_input(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        if await self.processes.send_client_input(step.value or ""):
            return _Outcome(True, "Input sent to client")
        return _Outcome(False, "Client is not running", ErrorCode.PROCESS_CRASHED)

    async def _wait(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        try:
            ms = int(str(step.value).strip()) if not is_blank(step.value) else DEFAULT_WAIT_MS
        except ValueError:
            self.logger.warning(f"[{step.id}] invalid wait {step.value!r}, using {DEFAULT_WAIT_MS}ms")
            ms = DEFAULT_WAIT_MS
        await asyncio.sleep(max(ms, 0) / 1000)
        return _Outcome(True, f"Waited {ms}ms")

    async def _tcp_relay(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        if self.middleware is None:
            return _Outcome(False, "No traffic middleware configured", ErrorCode.TCP_RELAY_ERROR)
        try:
            await self.middleware.start(args.use_http)
        except MiddlewareError as e:
            return _Outcome(False, str(e), ErrorCode.TCP_RELAY_ERROR)
        if not await self.middleware.proxy(self.store):
            return _Outcome(False, "Relay is not proxying traffic", ErrorCode.TCP_RELAY_ERROR)
        return _Outcome(True, f"Relay running in {args.protocol} mode")

    # -- network and file actions --------------------------------------------------------

    async def _http_request(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        method, url, expected_status, expected_body = parse_http_spec(step.value)
        status, raw = await asyncio.to_thread(
            _http_call, method, url, args.stage_timeout_seconds
        )
        body = raw.decode("utf-8", errors="replace")
        self.store.set_client_output(step.question_code, step.stage_label, body)
        self.store.set_http_metadata(
            step.question_code, step.stage_label, method, status, len(raw)
        )

        if expected_status is not None:
            if normalize_status_code(expected_status) != normalize_status_code(status):
                return _Outcome(
                    False,
                    f"{method} {url} returned {status}, expected {expected_status}",
                    ErrorCode.HTTP_NON_SUCCESS,
                )
        elif not 200 <= status < 300:
            return _Outcome(
                False, f"{method} {url} returned {status}", ErrorCode.HTTP_NON_SUCCESS
            )

        if expected_body is not None and expected_body.lower() not in body.lower():
            return _Outcome(
                False,
                f"Response body does not contain {expected_body!r}",
                ErrorCode.TEXT_MISMATCH,
            )
        return _Outcome(True, f"{method} {url} -> {status}")

    async def _assert_text(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        if step.stage is Stage.INPUT:
            return _Outcome(
                True,
                "Input stage text is not verifiable",
                ErrorCode.INPUT_VALIDATION_SKIPPED,
                0,
            )
        if is_blank(step.target) or is_blank(step.value):
            return _Outcome(True, IGNORED_MESSAGE, ErrorCode.EXPECTED_FILE_MISSING, 0)

        content = read_actual_text(step.target, self.store)
        if content is None:
            return _Outcome(
                False, f"File not found: {step.target}", ErrorCode.FILE_NOT_FOUND
            )
        if normalize_text(step.value) in normalize_text(content):
            return _Outcome(True, "Text found", actual_path=step.target)
        return _Outcome(
            False,
            f"Text {step.value!r} not found in {step.target}",
            ErrorCode.TEXT_MISMATCH,
            actual_path=step.target,
        )

    async def _capture_file(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        if is_blank(step.target):
            return _Outcome(False, "No source file given", ErrorCode.FILE_NOT_FOUND)
        source = Path(step.target.strip())
        if not source.is_file():
            return _Outcome(False, f"File not found: {source}", ErrorCode.FILE_NOT_FOUND)
        if is_blank(step.value):
            return _Outcome(False, "No destination given", ErrorCode.PATH_NOT_FOUND)
        destination = Path(step.value.strip())
        try:
            shutil.copyfile(source, destination)
        except FileNotFoundError:
            return _Outcome(
                False, f"Path not found: {destination.parent}", ErrorCode.PATH_NOT_FOUND
            )
        except PermissionError:
            return _Outcome(
                False, f"Permission denied: {destination}", ErrorCode.PERMISSION_DENIED
            )
        except OSError as e:
            return _Outcome(False, f"Copy failed: {e}", ErrorCode.FILE_COPY_FAILED)
        return _Outcome(True, f"Captured {source.name}", actual_path=str(destination))

    # -- comparisons -------------------------------------------------------------------

    def resolve_actual(self, step: Step) -> str:
        """Use ``value`` when it is a path or capture reference, else the step's capture."""
        value = (step.value or "").strip()
        if value and value != "-":
            if is_memory_ref(value):
                return value
            path = Path(value)
            if path.is_absolute() or path.exists():
                return value
        key = CaptureKey.of(step.question_code, step.stage_label, channel_for_step(step))
        return key.to_uri()

    def _compare_metadata(self, step: Step, kind: ValidationKind) -> CompareResult:
        meta = self.store.try_get_http_metadata(step.question_code, step.stage_label)
        if kind is ValidationKind.HTTP_METHOD:
            return compare_http_method(
                step.http_method or step.target, meta.method if meta else None
            )
        if kind is ValidationKind.STATUS_CODE:
            return compare_status_code(
                step.status_code or step.target, meta.status_code if meta else None
            )
        if kind is ValidationKind.BYTE_SIZE:
            expected = step.byte_size if step.byte_size is not None else step.target
            return compare_byte_size(expected, meta.byte_size if meta else None)
        content = read_actual_text(self.resolve_actual(step), self.store)
        return compare_data_type(step.data_type or step.target, content)

    async def _compare(self, step: Step, args: ExecuteSuiteArgs) -> _Outcome:
        action = Action(step.action)
        kind = step.validation_kind
        actual = self.resolve_actual(step)

        if kind in (
            ValidationKind.HTTP_METHOD,
            ValidationKind.STATUS_CODE,
            ValidationKind.BYTE_SIZE,
            ValidationKind.DATA_TYPE,
        ):
            result = self._compare_metadata(step, kind)
        elif action is Action.COMPARE_FILE:
            result = compare_file(step.target, actual, self.store)
        elif action is Action.COMPARE_JSON:
            result = compare_json(step.target, actual, self.store)
        elif action is Action.COMPARE_CSV:
            result = compare_csv(
                step.target, actual, self.store, has_header=step.csv_header
            )
        else:
            result = compare_text(step.target, actual, self.store)

        detail_path = None
        if isinstance(result, TextCompareResult) and not result.equal:
            detail_path = write_text_diff(
                result, mismatch_path(args.result_root, step.question_code, step.stage_label)
            )

        return _Outcome(
            ok=result.equal,
            message=result.message,
            code=result.code,
            points_possible=0 if result.ignored else 1,
            detail_path=detail_path,
            actual_path=actual,
        )
