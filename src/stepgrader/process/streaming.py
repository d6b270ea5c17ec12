"""Event-loop helpers shared by the process manager and the runner."""

from __future__ import annotations

import asyncio
import gc
import logging
import sys
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Suppress asyncio subprocess-transport cleanup noise (module-level, once).
#
# Subprocess transports kept alive by a transport/protocol reference cycle can
# be collected after asyncio.run() has closed the loop. Their __del__ then
# raises "Event loop is closed" through sys.unraisablehook, which no
# try/except can catch, so a targeted hook filters exactly that error.
# ---------------------------------------------------------------------------
_original_unraisable_hook = sys.unraisablehook


def _quiet_unraisable_hook(unraisable):
    if isinstance(unraisable.exc_value, RuntimeError) and "Event loop is closed" in str(
        unraisable.exc_value
    ):
        return
    _original_unraisable_hook(unraisable)


sys.unraisablehook = _quiet_unraisable_hook


def close_transport(proc: asyncio.subprocess.Process) -> None:
    """Close a finished process transport while the event loop is still alive."""
    transport = getattr(proc, "_transport", None)
    if transport is not None:
        transport.close()


def run_sync(main: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion on a fresh event loop.

    The asyncio logger is silenced while the loop shuts down and the cyclic GC
    is forced before it is restored, so transport finalizers fire quietly.
    """
    asyncio_logger = logging.getLogger("asyncio")
    original_level = asyncio_logger.level
    asyncio_logger.setLevel(logging.CRITICAL)
    try:
        result = asyncio.run(main)
        gc.collect()
        return result
    finally:
        asyncio_logger.setLevel(original_level)
