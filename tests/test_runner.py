import asyncio
import logging

import pytest
import yaml
from junitparser import JUnitXml

from stepgrader.config import GradingConfig, load_suite
from stepgrader.reporting import LogReporter
from stepgrader.runner import SuiteRunner

FAST = {"use_middleware": False, "stage_settle_seconds": 0, "server_ready_timeout": 0.3}


@pytest.fixture
def suite(tmp_path, echo_script):
    expected = tmp_path / "expected"
    expected.mkdir()
    (expected / "q1_2.txt").write_text("echo:ping\n")
    (expected / "q1_wrong.txt").write_text("echo:pong\n")

    path = tmp_path / "suite.yaml"
    path.write_text(f"""
client: {echo_script}
stage_timeout_seconds: 5
cases:
  - name: echo
    mark: 2
    steps:
      - {{id: OC-START-1, action: ClientStart, question_code: Q1}}
      - {{id: OC-WAIT-1, action: Wait, question_code: Q1, value: 300}}
      - {{id: OC-IN-2, action: ClientInput, question_code: Q1, value: ping}}
      - {{id: OC-WAIT-2, action: Wait, question_code: Q1, value: 300}}
      - {{id: OC-OUT-2, action: CompareText, question_code: Q1, target: expected/q1_2.txt}}
      - {{id: OC-OUT-2, action: CompareText, question_code: Q1, target: expected/q1_wrong.txt}}
  - name: second
    steps:
      - {{id: OS-START-1, action: ServerStart, question_code: Q2}}
""")
    return load_suite(path)


def test_execute_writes_reports(tmp_path, suite):
    runner = SuiteRunner(suite, tmp_path / "runs", overrides=FAST)
    run_dir = runner.execute()

    assert (run_dir / "junit.xml").exists()
    assert (run_dir / "summary.yaml").exists()
    assert (run_dir / "debug.log").exists()
    assert (run_dir / "echo" / "actual" / "clients" / "Q1" / "stage_2.txt").read_text() == (
        "echo:ping\n"
    )
    assert (run_dir / "echo" / "mismatches" / "Q1" / "stage_2.diff.txt").exists()

    echo, second = runner.summaries
    assert (echo.points_awarded, echo.points_possible) == (1, 2)
    assert echo.scaled_mark == 1.0
    assert echo.failed == 1
    # no server executable in the suite
    assert second.errors_by_category == {"Process": 1}
    assert not runner.interrupted

    data = yaml.safe_load((run_dir / "summary.yaml").read_text())
    assert data["totals"]["max_mark"] == 3.0
    suites = {s.name for s in JUnitXml.fromfile(str(run_dir / "junit.xml"))}
    assert suites == {"echo", "second"}


def test_case_filter(tmp_path, suite):
    runner = SuiteRunner(suite, tmp_path / "runs", case_filter="second", overrides=FAST)
    runner.execute()
    assert [s.case for s in runner.summaries] == ["second"]


def test_unknown_case_filter(tmp_path, suite):
    runner = SuiteRunner(suite, tmp_path / "runs", case_filter="nope")
    with pytest.raises(ValueError, match="nope"):
        runner.execute()


def test_cancel_stops_case_and_processes(tmp_path, suite, test_logger):
    runner = SuiteRunner(suite, tmp_path / "runs")
    args = suite.to_args(tmp_path / "runs" / "manual", **FAST)
    reporter = LogReporter(test_logger)

    async def scenario():
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.15, cancel_event.set)
        return await runner.run(runner.cases(), args, reporter, test_logger, cancel_event)

    summaries = asyncio.run(scenario())

    assert runner.interrupted
    assert [s.case for s in summaries] == ["echo"]
    assert summaries[0].interrupted
    assert summaries[0].errors_by_category == {"Timeout": 1}
    # the cancel lands while the client starts or in the first Wait
    assert summaries[0].total_steps <= 2


def test_cancel_during_last_step_marks_case_interrupted(tmp_path, test_logger):
    path = tmp_path / "suite.yaml"
    path.write_text("""
cases:
  - name: only-wait
    steps:
      - {id: OC-WAIT-1, action: Wait, question_code: Q1, value: 5000}
""")
    suite = load_suite(path)
    runner = SuiteRunner(suite, tmp_path / "runs")
    args = suite.to_args(tmp_path / "runs" / "manual", **FAST)
    reporter = LogReporter(test_logger)

    async def scenario():
        cancel_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, cancel_event.set)
        return await runner.run(runner.cases(), args, reporter, test_logger, cancel_event)

    (summary,) = asyncio.run(scenario())

    assert runner.interrupted
    assert summary.interrupted
    assert summary.total_steps == 1
    assert summary.errors_by_category == {"Timeout": 1}


def test_keyboard_interrupt_keeps_partial_results(tmp_path, suite, mocker):
    def interrupt(coro):
        coro.close()
        raise KeyboardInterrupt

    mocker.patch("stepgrader.runner.run_sync", side_effect=interrupt)
    runner = SuiteRunner(suite, tmp_path / "runs", overrides=FAST)
    run_dir = runner.execute()

    assert runner.interrupted
    data = yaml.safe_load((run_dir / "summary.yaml").read_text())
    assert data["interrupted"] is True
    assert "interrupted" in (run_dir / "debug.log").read_text()
    assert logging.getLogger("stepgrader_run").handlers == []


def test_grading_override(tmp_path, suite):
    runner = SuiteRunner(
        suite,
        tmp_path / "runs",
        grading=GradingConfig(grade_output_clients_sheet=False),
        case_filter="echo",
        overrides=FAST,
    )
    runner.execute()

    (summary,) = runner.summaries
    assert summary.skipped == 6
    assert summary.failed == 0
    assert summary.points_possible == 0
