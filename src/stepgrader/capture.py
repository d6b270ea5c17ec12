"""Run-scoped capture store for process and network output.

The store is shared by the asyncio output pumps, the relay middleware and the
worker threads that perform blocking HTTP calls, so every access goes through
one ``threading.Lock``. It also holds the "current" question/stage cell that
pumps read at line-arrival time to attribute output to the active step.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from stepgrader.workspace import DEFAULT_STAGE, UNKNOWN_QUESTION, actual_path

MEMORY_SCHEME = "memory://"


class Channel(str, Enum):
    """Capture channels; the value doubles as the result sub-folder."""

    CLIENT_OUTPUT = "clients"
    SERVER_OUTPUT = "servers"
    SERVER_REQUEST = "servers-req"
    SERVER_RESPONSE = "servers-resp"


def _norm_question(question: str | None) -> str:
    return (question or "").strip() or UNKNOWN_QUESTION


def _norm_stage(stage: str | None) -> str:
    return (stage or "").strip() or DEFAULT_STAGE


@dataclass(frozen=True)
class CaptureKey:
    question: str
    stage: str
    channel: Channel

    @classmethod
    def of(cls, question: str | None, stage: str | None, channel: Channel) -> CaptureKey:
        return cls(_norm_question(question), _norm_stage(stage), channel)

    def to_uri(self) -> str:
        return f"{MEMORY_SCHEME}{self.channel.value}/{self.question}/{self.stage}"

    @classmethod
    def parse(cls, uri: str) -> CaptureKey:
        """Parse ``memory://<folder>/<question>/<stage>``; the stage may be omitted."""
        if not is_memory_ref(uri):
            raise ValueError(f"Not a capture reference: {uri!r}")
        parts = uri.strip()[len(MEMORY_SCHEME) :].split("/")
        if len(parts) < 2 or len(parts) > 3:
            raise ValueError(f"Malformed capture reference: {uri!r}")
        try:
            channel = Channel(parts[0])
        except ValueError:
            raise ValueError(f"Unknown capture channel in {uri!r}") from None
        stage = parts[2] if len(parts) == 3 else None
        return cls.of(parts[1], stage, channel)


def is_memory_ref(value: str | None) -> bool:
    return bool(value) and value.strip().lower().startswith(MEMORY_SCHEME)


@dataclass(frozen=True)
class HttpMetadata:
    method: str | None = None
    status_code: int | None = None
    byte_size: int | None = None


class CaptureStore:
    """Thread-safe mapping from ``CaptureKey`` to a growable text buffer."""

    def __init__(
        self, result_root: Path | None = None, logger: logging.Logger | None = None
    ) -> None:
        self._lock = threading.Lock()
        self._buffers: dict[CaptureKey, list[str]] = {}
        self._metadata: dict[tuple[str, str], HttpMetadata] = {}
        self._current = (UNKNOWN_QUESTION, DEFAULT_STAGE)
        self.result_root = Path(result_root) if result_root else None
        self.logger = logger or logging.getLogger(__name__)

    # -- current step ---------------------------------------------------------

    def set_current(self, question: str | None, stage: str | None) -> None:
        with self._lock:
            self._current = (_norm_question(question), _norm_stage(stage))

    def current(self) -> tuple[str, str]:
        with self._lock:
            return self._current

    def current_key(self, channel: Channel) -> CaptureKey:
        question, stage = self.current()
        return CaptureKey(question, stage, channel)

    # -- buffers ---------------------------------------------------------------

    def append(self, key: CaptureKey, text: str) -> None:
        """Append whole lines to a buffer, creating it on first write."""
        with self._lock:
            self._buffers.setdefault(key, []).append(text)
            self._mirror(key, text, mode="a")

    def set(self, key: CaptureKey, text: str) -> None:
        """Replace a buffer wholesale."""
        with self._lock:
            self._buffers[key] = [text]
            self._mirror(key, text, mode="w")

    def get(self, key: CaptureKey) -> str | None:
        with self._lock:
            chunks = self._buffers.get(key)
            return "".join(chunks) if chunks is not None else None

    def keys(self) -> list[CaptureKey]:
        with self._lock:
            return list(self._buffers)

    def read_all_stages(self, channel: Channel, question: str | None) -> str:
        """Concatenate every stage of a question's channel in first-write order."""
        question = _norm_question(question)
        with self._lock:
            return "".join(
                "".join(chunks)
                for key, chunks in self._buffers.items()
                if key.channel is channel and key.question == question
            )

    def try_get_captured_output(self, ref: str | CaptureKey) -> str | None:
        """Resolve a capture reference, falling back to all stages when empty."""
        key = CaptureKey.parse(ref) if isinstance(ref, str) else ref
        content = self.get(key)
        if content and content.strip():
            return content
        aggregated = self.read_all_stages(key.channel, key.question)
        if aggregated.strip():
            return aggregated
        return content

    def append_client_output(self, text: str) -> None:
        self.append(self.current_key(Channel.CLIENT_OUTPUT), text)

    def append_server_output(self, text: str) -> None:
        self.append(self.current_key(Channel.SERVER_OUTPUT), text)

    def set_client_output(self, question: str | None, stage: str | None, text: str) -> None:
        self.set(CaptureKey.of(question, stage, Channel.CLIENT_OUTPUT), text)

    def set_server_output(self, question: str | None, stage: str | None, text: str) -> None:
        self.set(CaptureKey.of(question, stage, Channel.SERVER_OUTPUT), text)

    def set_server_request(self, question: str | None, stage: str | None, text: str) -> None:
        self.set(CaptureKey.of(question, stage, Channel.SERVER_REQUEST), text)

    def set_server_response(
        self, question: str | None, stage: str | None, text: str
    ) -> None:
        self.set(CaptureKey.of(question, stage, Channel.SERVER_RESPONSE), text)

    # -- HTTP metadata -----------------------------------------------------------

    def set_http_metadata(
        self,
        question: str | None,
        stage: str | None,
        method: str | None,
        status_code: int | None,
        byte_size: int | None,
    ) -> None:
        with self._lock:
            self._metadata[(_norm_question(question), _norm_stage(stage))] = (
                HttpMetadata(method=method, status_code=status_code, byte_size=byte_size)
            )

    def try_get_http_metadata(
        self, question: str | None, stage: str | None
    ) -> HttpMetadata | None:
        with self._lock:
            return self._metadata.get((_norm_question(question), _norm_stage(stage)))

    def clear(self) -> None:
        with self._lock:
            self._buffers.clear()
            self._metadata.clear()
            self._current = (UNKNOWN_QUESTION, DEFAULT_STAGE)

    def _mirror(self, key: CaptureKey, text: str, mode: str) -> None:
        # Caller holds the lock, so file writes keep the buffer's order.
        if self.result_root is None:
            return
        path = actual_path(self.result_root, key.channel.value, key.question, key.stage)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, mode, encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            self.logger.warning(f"Could not write capture file {path}: {e}")
