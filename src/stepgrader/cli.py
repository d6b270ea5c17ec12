from __future__ import annotations

from pathlib import Path

import typer

from stepgrader.config import GradingMode

app = typer.Typer(name="stepgrader", help="Grade client/server submissions step by step")


@app.command()
def run(
    suite: str = typer.Argument(help="Path to suite YAML"),
    results: str = typer.Option("results", help="Output directory for run results"),
    case: str | None = typer.Option(None, help="Run only this case"),
    mode: GradingMode | None = typer.Option(
        None, help="Grading preset, overrides the suite's grading mode"
    ),
    client: str | None = typer.Option(None, help="Client executable, overrides the suite"),
    server: str | None = typer.Option(None, help="Server executable, overrides the suite"),
    timeout: int | None = typer.Option(
        None, "--timeout", "-t", min=1, help="Stage timeout in seconds"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output to terminal"
    ),
):
    """Run a grading suite against a submission."""
    from stepgrader.config import GradingConfig, load_suite
    from stepgrader.errors import SuiteLoadError
    from stepgrader.metrics import summarize_run
    from stepgrader.runner import SuiteRunner

    suite_path = Path(suite)
    if not suite_path.exists():
        typer.echo(f"Error: suite file not found: {suite}", err=True)
        raise typer.Exit(1)

    try:
        suite_config = load_suite(suite_path)
    except SuiteLoadError as e:
        typer.echo(f"Error [{e.code.value}]: {e}", err=True)
        raise typer.Exit(1)

    overrides: dict = {}
    if client:
        overrides["client_exe_path"] = str(Path(client).resolve())
    if server:
        overrides["server_exe_path"] = str(Path(server).resolve())
    if timeout:
        overrides["stage_timeout_seconds"] = timeout

    grading = GradingConfig.preset(mode) if mode else None
    try:
        runner = SuiteRunner(
            suite=suite_config,
            output_dir=Path(results),
            grading=grading,
            case_filter=case,
            verbose=verbose,
            overrides=overrides,
        )
        run_dir = runner.execute()
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    totals = summarize_run(runner.summaries)
    for summary in runner.summaries:
        status = "PASS" if summary.all_passed else "FAIL"
        typer.echo(
            f"  {status}  {summary.case}: {summary.points_awarded:g}/"
            f"{summary.points_possible:g} points, mark {summary.scaled_mark:g}/{summary.mark:g}"
        )
    typer.echo(f"Total mark: {totals['mark']:g}/{totals['max_mark']:g}")

    if runner.interrupted:
        typer.echo(f"Partial run saved: {run_dir}")
    else:
        typer.echo(f"Run complete: {run_dir}")
    if not verbose:
        typer.echo(f"Debug log: {run_dir / 'debug.log'}")

    if runner.interrupted or totals["steps_failed"] > 0:
        raise typer.Exit(1)


@app.command()
def codes():
    """List every error code with its category and meaning."""
    from stepgrader.errors import ErrorCode, describe

    for code in ErrorCode:
        info = describe(code)
        typer.echo(f"{code.value:<28} {info.category.value:<8} {info.title}: {info.description}")


@app.command()
def init(
    dir: str = typer.Option(
        "stepgrader", "--dir", help="Directory to initialize a grading suite in"
    ),
):
    """Initialize a new grading suite with an example case."""
    project_dir = Path(dir)
    project_dir.mkdir(parents=True, exist_ok=True)

    example = project_dir / "suite.yaml"
    if example.exists():
        typer.echo(f"suite.yaml already exists in {dir}, skipping.")
        return

    example.write_text("""\
protocol: HTTP
stage_timeout_seconds: 10
client: ./submission/client.py
server: ./submission/server.py
server_port: 5001
proxy_port: 5000
grading:
  mode: default

cases:
  - name: greeting
    mark: 1
    steps:
      - {id: OS-START-1, action: ServerStart, question_code: Q1}
      - {id: OC-HTTP-1, action: HttpRequest, question_code: Q1,
         value: "GET|http://127.0.0.1:5001/hello|200|hello"}
      - {id: OC-OUT-1, action: CompareText, question_code: Q1,
         target: ./expected/Q1/client_1.txt}
      - {id: OS-KILL-2, action: KillAll, question_code: Q1}
""")

    expected = project_dir / "expected" / "Q1"
    expected.mkdir(parents=True, exist_ok=True)
    (expected / "client_1.txt").write_text("hello\n")
    (project_dir / "submission").mkdir(exist_ok=True)

    typer.echo(f"Initialized grading suite in {dir}:")
    typer.echo("  suite.yaml     - example suite")
    typer.echo("  expected/Q1/   - expected output for question Q1")
    typer.echo("  submission/    - put the client and server executables here")
