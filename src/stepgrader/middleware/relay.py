"""Relay sitting between the client and the real server to capture traffic.

In TCP mode bytes are relayed in both directions and appended to the
request/response channels of the current step. In HTTP mode each connection
carries one request: the body is stored as the server request, the reply body
as the server response, and the method, status and size as HTTP metadata.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from stepgrader.capture import CaptureStore, Channel
from stepgrader.errors import ErrorCode, MiddlewareError

BUFFER_SIZE = 8192
STOP_WAIT_SECONDS = 2.0
_HOP_HEADERS = {"connection", "keep-alive", "proxy-connection"}


class TrafficMiddleware(Protocol):
    async def start(self, use_http: bool) -> None: ...

    async def stop(self) -> None: ...

    async def proxy(self, store: CaptureStore) -> bool: ...


def _parse_head(head: bytes) -> tuple[str, dict[str, str]]:
    lines = head.decode("iso-8859-1").split("\r\n")
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if ":" in line:
            name, value = line.split(":", 1)
            headers[name.strip().lower()] = value.strip()
    return lines[0], headers


def _force_close(head: bytes) -> bytes:
    """Rewrite a request head so the upstream closes the connection after replying."""
    lines = head.decode("iso-8859-1").split("\r\n")
    kept = [lines[0]] + [
        line
        for line in lines[1:]
        if line and line.split(":", 1)[0].strip().lower() not in _HOP_HEADERS
    ]
    kept.append("Connection: close")
    return ("\r\n".join(kept) + "\r\n\r\n").encode("iso-8859-1")


def _dechunk(body: bytes) -> bytes:
    out = bytearray()
    rest = body
    while rest:
        size_line, _, rest = rest.partition(b"\r\n")
        try:
            size = int(size_line.split(b";")[0].strip() or b"0", 16)
        except ValueError:
            return body
        if size == 0:
            break
        out += rest[:size]
        rest = rest[size + 2 :]
    return bytes(out)


def split_response(raw: bytes) -> tuple[int | None, bytes]:
    """Return (status code, decoded body) of a raw HTTP/1.x response."""
    head, sep, body = raw.partition(b"\r\n\r\n")
    if not sep:
        return None, b""
    status_line, headers = _parse_head(head + b"\r\n")
    parts = status_line.split(" ", 2)
    status = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None
    if "chunked" in headers.get("transfer-encoding", "").lower():
        body = _dechunk(body)
    return status, body


class RelayMiddleware:
    """Asyncio relay listening on the proxy port and forwarding to the server."""

    def __init__(
        self,
        store: CaptureStore,
        listen_host: str = "127.0.0.1",
        listen_port: int = 5000,
        target_host: str = "127.0.0.1",
        target_port: int = 5001,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.target_host = target_host
        self.target_port = target_port
        self.logger = logger or logging.getLogger(__name__)
        self.use_http = True
        self._server: asyncio.base_events.Server | None = None
        self._connections: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int | None:
        """Bound port, useful when listening on port 0."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self, use_http: bool) -> None:
        if self.is_running and self.use_http == use_http:
            return
        if self.is_running:
            await self.stop()

        self.use_http = use_http
        try:
            self._server = await asyncio.start_server(
                self._handle, self.listen_host, self.listen_port
            )
        except OSError as e:
            raise MiddlewareError(
                f"Cannot listen on {self.listen_host}:{self.listen_port}: {e}",
                ErrorCode.PROXY_START_FAILED,
            ) from e
        mode = "HTTP" if use_http else "TCP"
        self.logger.info(
            f"{mode} relay listening on {self.listen_host}:{self.port} -> "
            f"{self.target_host}:{self.target_port}"
        )

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.wait(list(self._connections), timeout=STOP_WAIT_SECONDS)
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=STOP_WAIT_SECONDS)
        except asyncio.TimeoutError:
            self.logger.warning("Relay did not close all connections in time")
        self.logger.info("Relay stopped")

    async def proxy(self, store: CaptureStore) -> bool:
        """Ensure the relay is running and capturing into ``store``."""
        self.store = store
        try:
            await self.start(self.use_http)
        except MiddlewareError as e:
            self.logger.error(f"Relay failed to start: {e}")
            return False
        return True

    async def _handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        self._connections.add(task)
        try:
            if self.use_http:
                await self._handle_http(reader, writer)
            else:
                await self._handle_tcp(reader, writer)
        except (
            ConnectionError,
            asyncio.IncompleteReadError,
            asyncio.LimitOverrunError,
        ) as e:
            self.logger.debug(f"Relay connection ended: {e!r}")
        finally:
            self._connections.discard(task)
            writer.close()

    async def _open_upstream(self):
        return await asyncio.open_connection(self.target_host, self.target_port)

    # -- TCP ---------------------------------------------------------------------

    async def _handle_tcp(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            up_reader, up_writer = await self._open_upstream()
        except OSError as e:
            self.logger.warning(f"Relay cannot reach server: {e}")
            return
        try:
            c2s = asyncio.create_task(self._pipe(reader, up_writer, Channel.SERVER_REQUEST))
            s2c = asyncio.create_task(
                self._pipe(up_reader, writer, Channel.SERVER_RESPONSE)
            )
            _, pending = await asyncio.wait({c2s, s2c}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
        finally:
            up_writer.close()

    async def _pipe(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, channel: Channel
    ) -> None:
        while True:
            data = await reader.read(BUFFER_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
            self.store.append(
                self.store.current_key(channel), data.decode("utf-8", errors="replace")
            )

    # -- HTTP --------------------------------------------------------------------

    async def _handle_http(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        head = await reader.readuntil(b"\r\n\r\n")
        request_line, headers = _parse_head(head)
        method = request_line.split(" ", 1)[0].upper()
        length = int(headers.get("content-length", "0") or 0)
        body = await reader.readexactly(length) if length else b""
        question, stage = self.store.current()

        try:
            up_reader, up_writer = await self._open_upstream()
        except OSError as e:
            self.logger.warning(f"Relay cannot reach server: {e}")
            writer.write(
                b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
            )
            await writer.drain()
            self.store.set_http_metadata(question, stage, method, 502, 0)
            return

        try:
            up_writer.write(_force_close(head) + body)
            await up_writer.drain()
            response = await up_reader.read()
        finally:
            up_writer.close()

        writer.write(response)
        await writer.drain()

        status, response_body = split_response(response)
        request_text = body.decode("utf-8", errors="replace")
        response_text = response_body.decode("utf-8", errors="replace")
        self.store.set_server_request(question, stage, request_text)
        self.store.set_server_response(question, stage, response_text)
        self.store.set_http_metadata(question, stage, method, status, len(response_body))
        self.logger.debug(
            f"[relay] {method} {request_line.split(' ')[1] if ' ' in request_line else ''}"
            f" -> {status} ({len(response_body)} bytes)"
        )
