from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from stepgrader.capture import CaptureStore
from stepgrader.config import (
    CaseConfig,
    ExecuteSuiteArgs,
    GradingConfig,
    SuiteConfig,
)
from stepgrader.errors import ProcessKillError
from stepgrader.executor import StepExecutor, StepResult
from stepgrader.metrics import CaseSummary, summarize_case
from stepgrader.middleware import RelayMiddleware
from stepgrader.process import ProcessManager
from stepgrader.process.streaming import run_sync
from stepgrader.reporting import (
    CompositeReporter,
    JUnitReporter,
    LogReporter,
    StepReporter,
)
from stepgrader.verbose import close_logger, setup_run_logger
from stepgrader.workspace import ResultWorkspace


class SuiteRunner:
    """Runs every case of a suite, one step at a time."""

    def __init__(
        self,
        suite: SuiteConfig,
        output_dir: Path,
        grading: GradingConfig | None = None,
        case_filter: str | None = None,
        verbose: bool = False,
        overrides: dict[str, Any] | None = None,
    ):
        self.suite = suite
        self.output_dir = Path(output_dir)
        self.grading = grading or suite.grading.build()
        self.case_filter = case_filter
        self.verbose = verbose
        self.overrides = overrides or {}
        self.summaries: list[CaseSummary] = []
        self.interrupted = False

    def cases(self) -> list[CaseConfig]:
        cases = self.suite.cases
        if self.case_filter:
            cases = [c for c in cases if c.name == self.case_filter]
            if not cases:
                raise ValueError(f"No case named '{self.case_filter}' in suite")
        return cases

    def execute(self) -> Path:
        """Run the suite and write reports. Returns the run directory."""
        cases = self.cases()

        run_id = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")
        run_dir = self.output_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)

        logger = setup_run_logger(run_dir, verbose=self.verbose)
        logger.debug(f"Starting grading run with {len(cases)} case(s)")

        args = self.suite.to_args(run_dir, **self.overrides)
        reporter = CompositeReporter([LogReporter(logger), JUnitReporter(run_dir)])

        try:
            run_sync(self.run(cases, args, reporter, logger))
        except KeyboardInterrupt:
            self.interrupted = True
            logger.warning(
                "Run interrupted by user (Ctrl+C). Processes were stopped; saving partial results..."
            )
        finally:
            reporter.end_run(self.summaries, self.interrupted)
            close_logger(logger)

        return run_dir

    async def run(
        self,
        cases: list[CaseConfig],
        args: ExecuteSuiteArgs,
        reporter: StepReporter,
        logger: logging.Logger,
        cancel_event: asyncio.Event | None = None,
    ) -> list[CaseSummary]:
        """Run the given cases sequentially; stops scheduling once cancelled."""
        store = CaptureStore(logger=logger)
        processes = ProcessManager(
            store, args.client_exe_path, args.server_exe_path, logger=logger
        )
        middleware = None
        if args.use_middleware:
            middleware = RelayMiddleware(
                store,
                listen_host=args.host,
                listen_port=args.proxy_port,
                target_host=args.host,
                target_port=args.server_port,
                logger=logger,
            )
        executor = StepExecutor(processes, store, self.grading, args, middleware, logger)
        workspace = ResultWorkspace(args.result_root)

        for case in cases:
            if cancel_event is not None and cancel_event.is_set():
                self.interrupted = True
                break
            case_dir = workspace.prepare_case(case.name)
            store.clear()
            store.result_root = case_dir
            processes.init(args.client_exe_path, args.server_exe_path)
            case_args = args.model_copy(update={"result_root": case_dir})

            reporter.begin_case(case)
            results, interrupted = await self._run_case(
                case, case_args, store, executor, reporter, logger, cancel_event
            )
            self.interrupted = self.interrupted or interrupted
            summary = summarize_case(case.name, case.mark, results, interrupted)
            self.summaries.append(summary)
            reporter.end_case(summary)

        return self.summaries

    async def _run_case(
        self,
        case: CaseConfig,
        args: ExecuteSuiteArgs,
        store: CaptureStore,
        executor: StepExecutor,
        reporter: StepReporter,
        logger: logging.Logger,
        cancel_event: asyncio.Event | None,
    ) -> tuple[list[StepResult], bool]:
        results: list[StepResult] = []
        interrupted = False
        previous_stage: str | None = None
        try:
            for step in case.steps:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Run cancelled; skipping remaining steps of '{case.name}'")
                    interrupted = True
                    break

                stage = step.stage_label
                if previous_stage is not None and stage != previous_stage:
                    # let late output from the previous stage land before switching
                    await asyncio.sleep(args.stage_settle_seconds)
                previous_stage = stage

                store.set_current(step.question_code, stage)
                result = await executor.execute(step, args, cancel_event)
                results.append(result)
                reporter.log_step(result)

            if not interrupted and cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Run cancelled during the last step of '{case.name}'")
                interrupted = True
        finally:
            await self._cleanup(executor, logger)
        return results, interrupted

    async def _cleanup(self, executor: StepExecutor, logger: logging.Logger) -> None:
        """Stop everything the case started. Never observes the cancel event."""
        try:
            await executor.processes.stop_all()
        except ProcessKillError as e:
            logger.error(f"Cleanup could not stop all processes: {e}")
        if executor.middleware is not None:
            await executor.middleware.stop()
        for error in executor.processes.pump_errors():
            logger.warning(f"Output pump failure: {error}")
