import asyncio
import sys
import threading

import psutil
import pytest

from stepgrader.capture import CaptureKey, CaptureStore, Channel
from stepgrader.errors import ErrorCode, ExecutableMissingError
from stepgrader.process import ProcessManager, kill_process_tree


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def test_missing_server_executable(store, tmp_path):
    manager = ProcessManager(store, server_path=str(tmp_path / "missing.py"))

    with pytest.raises(ExecutableMissingError) as exc_info:
        asyncio.run(manager.start_server())

    assert exc_info.value.code is ErrorCode.SERVER_EXE_MISSING
    assert manager.live_handles() == []


def test_missing_client_path_is_none(store):
    manager = ProcessManager(store)

    with pytest.raises(ExecutableMissingError) as exc_info:
        asyncio.run(manager.start_client())

    assert exc_info.value.code is ErrorCode.CLIENT_EXE_MISSING


def test_output_attributed_to_current_stage(echo_script):
    store = CaptureStore()
    manager = ProcessManager(store, client_path=str(echo_script))

    async def scenario():
        store.set_current("Q1", "1")
        await manager.start_client()
        await wait_for(lambda: "client ready" in manager.get_client_output())

        store.set_current("Q1", "2")
        assert await manager.send_client_input("ping")
        await wait_for(lambda: "echo:ping" in manager.get_client_output())

        await manager.stop_all()
        return manager.live_handles()

    assert asyncio.run(scenario()) == []
    assert store.get(CaptureKey("Q1", "1", Channel.CLIENT_OUTPUT)) == "client ready\n"
    assert store.get(CaptureKey("Q1", "2", Channel.CLIENT_OUTPUT)) == "echo:ping\n"


def test_start_server_is_idempotent(server_script):
    store = CaptureStore()
    manager = ProcessManager(store, server_path=str(server_script))

    async def scenario():
        first = await manager.start_server()
        second = await manager.start_server()
        same = first is second
        running = manager.is_server_running
        await manager.stop_all()
        return same, running, manager.is_server_running

    same, running, after = asyncio.run(scenario())
    assert same
    assert running
    assert not after


def test_server_output_goes_to_server_channel(server_script):
    store = CaptureStore()
    manager = ProcessManager(store, server_path=str(server_script))

    async def scenario():
        store.set_current("Q2", "1")
        await manager.start_server()
        await wait_for(lambda: "server ready" in manager.get_server_output())
        await manager.stop_server()

    asyncio.run(scenario())
    captured = store.get(CaptureKey("Q2", "1", Channel.SERVER_OUTPUT))
    assert "server booting\n" in captured
    assert store.get(CaptureKey("Q2", "1", Channel.CLIENT_OUTPUT)) is None


def test_stderr_is_captured(write_script):
    script = write_script(
        "noisy.py",
        """
        import sys
        import time
        print("oops", file=sys.stderr, flush=True)
        time.sleep(30)
        """,
    )
    store = CaptureStore()
    manager = ProcessManager(store, client_path=str(script))

    async def scenario():
        await manager.start_client()
        await wait_for(lambda: "oops" in manager.get_client_output())
        await manager.stop_all()

    asyncio.run(scenario())
    assert manager.pump_errors() == []


def test_send_input_without_client(store):
    manager = ProcessManager(store)
    assert asyncio.run(manager.send_client_input("hello")) is False


def test_stop_all_kills_process_tree(write_script):
    script = write_script(
        "parent.py",
        f"""
        import subprocess
        import time
        child = subprocess.Popen([{sys.executable!r}, "-c", "import time; time.sleep(60)"])
        print(child.pid, flush=True)
        time.sleep(60)
        """,
    )
    store = CaptureStore()
    manager = ProcessManager(store, server_path=str(script))

    async def scenario():
        handle = await manager.start_server()
        await wait_for(lambda: manager.get_server_output().strip() != "")
        child_pid = int(manager.get_server_output().split()[0])
        await manager.stop_all()
        return handle, child_pid

    handle, child_pid = asyncio.run(scenario())
    assert not handle.is_running
    try:
        psutil.Process(child_pid).wait(timeout=3)
    except (psutil.NoSuchProcess, psutil.TimeoutExpired):
        pass
    assert not psutil.pid_exists(child_pid) or psutil.Process(child_pid).status() == (
        psutil.STATUS_ZOMBIE
    )


def test_kill_process_tree_ignores_exited_process(mocker):
    mocker.patch("psutil.Process", side_effect=psutil.NoSuchProcess(999999))
    kill_process_tree(999999)


def test_init_retargets_and_forgets_handles(store, echo_script):
    manager = ProcessManager(store, client_path=str(echo_script))

    async def scenario():
        await manager.start_client()
        await manager.stop_all()

    asyncio.run(scenario())
    manager.init(None, str(echo_script))

    assert manager.client is None
    assert manager.server_path == str(echo_script)
    assert manager.live_handles() == []


def test_tree_kill_runs_off_the_event_loop_thread(store, echo_script, mocker):
    kill_threads = []

    def kill_and_record(pid):
        kill_threads.append(threading.current_thread())
        kill_process_tree(pid)

    mocker.patch(
        "stepgrader.process.manager.kill_process_tree", side_effect=kill_and_record
    )
    manager = ProcessManager(store, client_path=str(echo_script))

    async def scenario():
        handle = await manager.start_client()
        await manager.stop_all()
        return handle, threading.current_thread()

    handle, loop_thread = asyncio.run(scenario())
    assert not handle.is_running
    assert len(kill_threads) == 1
    assert kill_threads[0] is not loop_thread
