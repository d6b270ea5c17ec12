"""Lifecycle of the submission's client and server processes."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from stepgrader.capture import CaptureStore, Channel
from stepgrader.errors import (
    ErrorCode,
    ExecutableMissingError,
    GradingError,
    ProcessKillError,
)
from stepgrader.process.launcher import resolve_command
from stepgrader.process.streaming import close_transport

STREAM_LIMIT = 16 * 1024 * 1024
EXIT_WAIT_SECONDS = 5.0
PUMP_DRAIN_SECONDS = 2.0


@dataclass
class ManagedProcess:
    """A running submission process and the output it produced so far."""

    role: str
    command: list[str]
    proc: asyncio.subprocess.Process
    channel: Channel
    pumps: list[asyncio.Task] = field(default_factory=list)
    _lines: list[str] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def is_running(self) -> bool:
        return self.proc.returncode is None

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def output(self) -> str:
        with self._lock:
            return "".join(self._lines)


def kill_process_tree(pid: int) -> None:
    """Force-kill a process and all of its descendants.

    A process that already exited counts as killed. Raises ProcessKillError when
    the OS refuses the kill.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for p in [*children, parent]:
        try:
            p.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            raise ProcessKillError(f"Cannot kill process {p.pid}: {e}") from e
    psutil.wait_procs(children, timeout=3)


class ProcessManager:
    """Starts, stops and drains the submission's processes.

    Each process gets two pump tasks, one per output stream, that run for the
    process lifetime. Every line goes to the process buffer and to the capture
    store under whatever question/stage is current when the line arrives.
    """

    def __init__(
        self,
        store: CaptureStore,
        client_path: str | None = None,
        server_path: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.client_path = client_path
        self.server_path = server_path
        self.logger = logger or logging.getLogger(__name__)
        self._client: ManagedProcess | None = None
        self._server: ManagedProcess | None = None
        self._handles: list[ManagedProcess] = []
        self._pump_errors: list[str] = []

    def init(self, client_path: str | None, server_path: str | None) -> None:
        """Re-target the manager for a new case. Running processes must be stopped first."""
        self.client_path = client_path
        self.server_path = server_path
        self._client = None
        self._server = None
        self._handles = []
        self._pump_errors = []

    # -- state ------------------------------------------------------------------

    @property
    def is_server_running(self) -> bool:
        return self._server is not None and self._server.is_running

    @property
    def is_client_running(self) -> bool:
        return self._client is not None and self._client.is_running

    @property
    def server(self) -> ManagedProcess | None:
        return self._server

    @property
    def client(self) -> ManagedProcess | None:
        return self._client

    def live_handles(self) -> list[ManagedProcess]:
        return [h for h in self._handles if h.is_running]

    def get_client_output(self) -> str:
        return self._client.output() if self._client else ""

    def get_server_output(self) -> str:
        return self._server.output() if self._server else ""

    def pump_errors(self) -> list[str]:
        return list(self._pump_errors)

    # -- start ------------------------------------------------------------------

    async def start_server(self, args: list[str] | None = None) -> ManagedProcess:
        """Start the server unless it is already alive."""
        if self.is_server_running:
            return self._server
        self._server = await self.start(
            self.server_path,
            args,
            role="server",
            channel=Channel.SERVER_OUTPUT,
            missing_code=ErrorCode.SERVER_EXE_MISSING,
        )
        return self._server

    async def start_client(self, args: list[str] | None = None) -> ManagedProcess:
        """Start the client unless it is already alive."""
        if self.is_client_running:
            return self._client
        self._client = await self.start(
            self.client_path,
            args,
            role="client",
            channel=Channel.CLIENT_OUTPUT,
            missing_code=ErrorCode.CLIENT_EXE_MISSING,
        )
        return self._client

    async def start(
        self,
        path: str | None,
        args: list[str] | None = None,
        role: str = "process",
        channel: Channel = Channel.CLIENT_OUTPUT,
        missing_code: ErrorCode = ErrorCode.FILE_NOT_FOUND,
    ) -> ManagedProcess:
        """Launch an executable with redirected stdio and start its pumps."""
        if not path or not Path(path).exists():
            raise ExecutableMissingError(f"{role} executable not found: {path}", missing_code)

        command = resolve_command(path, args)
        self.logger.debug(f"Starting {role}: {' '.join(command)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(Path(path).resolve().parent),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise GradingError(
                f"Cannot launch {role} ({command[0]}): {e}", ErrorCode.PROCESS_CRASHED
            ) from e

        handle = ManagedProcess(role=role, command=command, proc=proc, channel=channel)
        for stream, name in ((proc.stdout, "stdout"), (proc.stderr, "stderr")):
            task = asyncio.create_task(
                self._pump(handle, stream, name), name=f"{role}-{name}-{proc.pid}"
            )
            task.add_done_callback(self._on_pump_done)
            handle.pumps.append(task)
        self._handles.append(handle)
        self.logger.info(f"Started {role} (pid {proc.pid})")
        return handle

    async def _pump(
        self, handle: ManagedProcess, stream: asyncio.StreamReader, name: str
    ) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\r\n") + "\n"
            handle.append(text)
            self.store.append(self.store.current_key(handle.channel), text)
            self.logger.debug(f"[{handle.role}:{name}] {text.rstrip()}")

    def _on_pump_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._pump_errors.append(f"{task.get_name()}: {exc!r}")
            self.logger.warning(f"Output pump {task.get_name()} failed: {exc!r}")

    # -- input ------------------------------------------------------------------

    async def send_client_input(self, text: str) -> bool:
        """Write one line to the client's stdin."""
        if not self.is_client_running or self._client.proc.stdin is None:
            self.logger.warning("Client is not running; input was not sent")
            return False
        stdin = self._client.proc.stdin
        try:
            stdin.write((text.rstrip("\r\n") + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self.logger.warning(f"Client closed its input: {e}")
            return False
        return True

    # -- stop -------------------------------------------------------------------

    async def stop_server(self) -> None:
        await self._stop(self._server)

    async def stop_client(self) -> None:
        await self._stop(self._client)

    async def stop_all(self) -> None:
        """Kill every process this manager started.

        All handles are attempted even when one kill fails; the first failure
        is raised afterwards.
        """
        errors: list[ProcessKillError] = []
        for handle in list(self._handles):
            try:
                await self._stop(handle)
            except ProcessKillError as e:
                self.logger.error(f"Failed to stop {handle.role}: {e}")
                errors.append(e)
        if errors:
            raise errors[0]

    async def _stop(self, handle: ManagedProcess | None) -> None:
        if handle is None:
            return
        if handle.is_running:
            self.logger.debug(f"Stopping {handle.role} (pid {handle.pid})")
            await asyncio.to_thread(kill_process_tree, handle.pid)
            try:
                await asyncio.wait_for(handle.proc.wait(), timeout=EXIT_WAIT_SECONDS)
            except asyncio.TimeoutError:
                raise ProcessKillError(
                    f"{handle.role} (pid {handle.pid}) did not exit after kill"
                ) from None

        pending = [t for t in handle.pumps if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=PUMP_DRAIN_SECONDS)
            for task in still_running:
                task.cancel()
        close_transport(handle.proc)
        self.logger.info(f"Stopped {handle.role} (exit code {handle.returncode})")
