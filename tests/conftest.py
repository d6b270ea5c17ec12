"""Pytest configuration and fixtures."""

import logging
import socket
import textwrap
from pathlib import Path

import pytest

from stepgrader.capture import CaptureStore


@pytest.fixture(autouse=True)
def cleanup_loggers():
    """Clean up stepgrader loggers after each test to prevent name collisions."""
    yield

    loggers_to_remove = [
        name
        for name in logging.Logger.manager.loggerDict.keys()
        if name.startswith("stepgrader")
    ]

    for name in loggers_to_remove:
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        del logging.Logger.manager.loggerDict[name]


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def port():
    return free_port()


@pytest.fixture
def store(tmp_path):
    return CaptureStore(result_root=tmp_path / "results")


@pytest.fixture
def test_logger():
    logger = logging.getLogger("stepgrader_test")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def write_script(tmp_path):
    """Write a small Python program to tmp_path and return its path."""

    def _write(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body))
        return path

    return _write


# A server that prints a banner and optionally listens on the port in argv[1].
SERVER_SCRIPT = """\
import socket
import sys
import time

print("server booting", flush=True)
sock = None
if len(sys.argv) > 1 and sys.argv[1].isdigit():
    sock = socket.socket()
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind(("127.0.0.1", int(sys.argv[1])))
    sock.listen()
    print("listening", flush=True)
print("server ready", flush=True)
time.sleep(60)
"""

ECHO_SCRIPT = """\
import sys

print("client ready", flush=True)
for line in sys.stdin:
    print("echo:" + line.strip(), flush=True)
"""


@pytest.fixture
def server_script(write_script):
    return write_script("server.py", SERVER_SCRIPT)


@pytest.fixture
def echo_script(write_script):
    return write_script("client.py", ECHO_SCRIPT)

