"""Tests for verbose logging."""

import logging
import re

from stepgrader.verbose import RUN_LOGGER_NAME, close_logger, setup_logger, setup_run_logger


def test_verbose_logger_creates_debug_log(tmp_path):
    """Logger should always create debug.log file."""
    debug_file = tmp_path / "debug.log"
    logger = setup_logger(debug_file=debug_file, verbose=False)

    assert not logger.disabled
    assert logger.level == logging.DEBUG
    assert debug_file.exists()


def test_verbose_logger_writes_to_file(tmp_path):
    debug_file = tmp_path / "debug.log"
    logger = setup_logger(debug_file=debug_file, verbose=False)

    logger.debug("test message")

    content = debug_file.read_text()
    assert "test message" in content
    assert "DEBUG" in content


def test_verbose_mode_adds_stderr_handler(tmp_path):
    logger = setup_logger(debug_file=tmp_path / "debug.log", verbose=True)

    handler_types = [type(h).__name__ for h in logger.handlers]
    assert sorted(handler_types) == ["FileHandler", "StreamHandler"]


def test_named_loggers_do_not_share_handlers(tmp_path):
    first = setup_logger(tmp_path / "a.log", logger_name="stepgrader_a")
    second = setup_logger(tmp_path / "b.log", logger_name="stepgrader_b")

    first.info("only in a")
    second.info("only in b")

    assert "only in b" not in (tmp_path / "a.log").read_text()
    assert "only in a" not in (tmp_path / "b.log").read_text()
    assert first.propagate is False


def test_setup_twice_does_not_duplicate_lines(tmp_path):
    debug_file = tmp_path / "debug.log"
    setup_logger(debug_file)
    logger = setup_logger(debug_file)

    logger.info("once")

    assert debug_file.read_text().count("once") == 1


def test_close_logger_detaches_handlers(tmp_path):
    debug_file = tmp_path / "nested" / "dir" / "debug.log"
    logger = setup_logger(debug_file)
    close_logger(logger)

    assert logger.handlers == []
    assert debug_file.parent.exists()


def test_run_logger_writes_timestamped_lines_into_run_folder(tmp_path):
    logger = setup_run_logger(tmp_path / "run")
    logger.info("[OC-OUT-1] PASS CompareText: Text matches")
    logger.debug("[client:stdout] echo:ping")
    close_logger(logger)

    lines = (tmp_path / "run" / "debug.log").read_text().splitlines()
    assert logger.name == RUN_LOGGER_NAME
    assert re.fullmatch(
        r"\[\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\] INFO \[OC-OUT-1\] PASS CompareText: Text matches",
        lines[0],
    )
    assert lines[1].endswith("DEBUG [client:stdout] echo:ping")
