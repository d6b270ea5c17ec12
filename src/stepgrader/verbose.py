"""Run log for a grading run.

Every run writes ``debug.log`` into its run folder. Lines look like
``[2026-01-31T10:00:00] INFO [OC-OUT-2] PASS CompareText: ...``; output pumped
from the submission is logged at DEBUG and tagged ``[client:stdout]`` or
``[server:stderr]``, so the file interleaves step verdicts with what the
processes printed at that moment.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

DEBUG_LOG_NAME = "debug.log"
RUN_LOGGER_NAME = "stepgrader_run"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def setup_logger(
    debug_file: Path, verbose: bool = False, logger_name: str = "stepgrader"
) -> logging.Logger:
    """
    Configure and return the logger a grading run reports through.

    Args:
        debug_file: Run log path; parent folders are created.
        verbose: Mirror every record, pump lines included, to stderr.
        logger_name: One name per run, so concurrent runs in the same
            interpreter never write into each other's files.

    Returns:
        A DEBUG-level logger that does not propagate to the root logger.
    """
    logger = logging.getLogger(logger_name)

    # a re-used name would otherwise write every line twice
    logger.handlers.clear()

    logger.disabled = False
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    debug_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(debug_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if verbose:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.DEBUG)
        stderr_handler.setFormatter(formatter)
        logger.addHandler(stderr_handler)

    return logger


def setup_run_logger(run_dir: Path, verbose: bool = False) -> logging.Logger:
    """Open ``debug.log`` in a run folder under the run logger name."""
    return setup_logger(run_dir / DEBUG_LOG_NAME, verbose=verbose, logger_name=RUN_LOGGER_NAME)


def close_logger(logger: logging.Logger) -> None:
    """Flush and detach every handler so the run folder can be moved or deleted."""
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)
