"""CLI entrypoint for unified-runner."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click
from rich.console import Console
from rich.logging import RichHandler

from unified_runner import __version__
from unified_runner.orchestrator.controllers import (
    CleanCommand,
    CommandResult,
    HistoryCommand,
    InspectRunCommand,
    InstallCommand,
    ListTasksCommand,
    OrchestratorCliController,
    PlanCommand,
    RunTasksCommand,
    StatusCommand,
)
from unified_runner.orchestrator.errors import ConfigurationError
from unified_runner.orchestrator.models import PACKAGE_MANAGERS, TASK_RUNNERS, CacheStrategy

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()
EXIT_CONFIG_ERROR = 3
T = TypeVar("T")

_PACKAGE_MANAGER_CHOICE = click.Choice(
    [backend.value for backend in PACKAGE_MANAGERS],
    case_sensitive=False,
)
_TASK_RUNNER_CHOICE = click.Choice(
    [backend.value for backend in TASK_RUNNERS],
    case_sensitive=False,
)
_EXISTING_DIR = click.Path(path_type=Path, file_okay=False, exists=True)


class ConfigurationFailure(click.ClickException):
    """Cycle, unknown task or invalid registry/settings."""

    exit_code = EXIT_CONFIG_ERROR


@click.group()
@click.version_option(version=__version__, prog_name="unified-runner")
def unified_runner() -> None:
    """Unified build/test/deploy task orchestrator."""


@unified_runner.command("run")
@click.option(
    "--task",
    "-t",
    "tasks",
    multiple=True,
    required=True,
    help="Task to run from the registry. Can be repeated.",
)
@click.option("--frameworks", "-f", default="", help="Comma-separated frameworks filter.")
@click.option("--platforms", "-p", default="", help="Comma-separated platforms filter.")
@click.option("--package-manager", type=_PACKAGE_MANAGER_CHOICE, default=None)
@click.option("--task-runner", type=_TASK_RUNNER_CHOICE, default=None)
@click.option(
    "--parallel/--no-parallel",
    default=None,
    help="Run parallel-safe batches concurrently (default: on).",
)
@click.option("--no-fallback", is_flag=True, help="Disable the fallback chain.")
@click.option("--dry", "-d", "dry_run", is_flag=True, help="Print commands without running them.")
@click.option("--verbose", "-v", is_flag=True, help="Stream task output and debug logs.")
@click.option(
    "--bail/--no-bail",
    default=None,
    help="Stop after the first failing batch (default: off).",
)
@click.option("--watch", "-w", is_flag=True, help="Re-run on file changes.")
@click.option(
    "--cache",
    type=click.Choice([strategy.value for strategy in CacheStrategy], case_sensitive=False),
    default=None,
    help="Cache strategy forwarded to task runners.",
)
@click.option(
    "--cloud-cache/--no-cloud-cache",
    default=None,
    help="Connect NX/Turborepo remote caches and enable them for cloud-cacheable tasks.",
)
@click.option(
    "--registry",
    "registry_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="JSON task registry. Defaults to the built-in task table.",
)
@click.option(
    "--cwd",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory for task processes.",
)
@click.option(
    "--report-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Write run-summary.json (plus junit.xml and run-report.html on request) here.",
)
@click.option("--junit", is_flag=True, help="Also write a JUnit XML report.")
@click.option("--html", "html_report", is_flag=True, help="Also write an HTML report.")
@click.option("--json", "json_output", is_flag=True, help="Print the JSON summary to stdout.")
@click.option("--no-history", is_flag=True, help="Do not record this run in the history DB.")
def run_tasks(  # noqa: PLR0913
    tasks: tuple[str, ...],
    frameworks: str,
    platforms: str,
    package_manager: str | None,
    task_runner: str | None,
    parallel: bool | None,
    no_fallback: bool,
    dry_run: bool,
    verbose: bool,
    bail: bool | None,
    watch: bool,
    cache: str | None,
    cloud_cache: bool | None,
    registry_path: Path | None,
    cwd: Path | None,
    report_dir: Path | None,
    junit: bool,
    html_report: bool,
    json_output: bool,
    no_history: bool,
) -> None:
    """Run tasks with their dependencies, batch by batch."""

    _configure_logging(verbose=verbose)
    result = _guard(
        lambda: CONTROLLER.run_tasks(
            RunTasksCommand(
                tasks=tasks,
                frameworks=_split_csv(frameworks),
                platforms=_split_csv(platforms),
                package_manager=package_manager,
                task_runner=task_runner,
                parallel=parallel,
                no_fallback=no_fallback,
                dry_run=dry_run,
                verbose=verbose,
                bail=bail,
                watch=watch,
                cache=cache,
                cloud_cache=cloud_cache,
                registry_path=registry_path,
                cwd=cwd,
                report_dir=report_dir,
                junit=junit,
                html_report=html_report,
                json_output=json_output,
                record_history=not no_history,
            ),
            echo=click.echo,
        ),
    )
    _finish(result)


@unified_runner.command("status")
@click.option("--cwd", type=_EXISTING_DIR, default=None, help="Project root.")
@click.option("--package-manager", type=_PACKAGE_MANAGER_CHOICE, default=None)
@click.option("--task-runner", type=_TASK_RUNNER_CHOICE, default=None)
def status(cwd: Path | None, package_manager: str | None, task_runner: str | None) -> None:
    """Show detected runners, environment issues and preferences."""

    _configure_logging(verbose=False)
    _emit_lines(
        _guard(
            lambda: CONTROLLER.status(
                StatusCommand(cwd=cwd, package_manager=package_manager, task_runner=task_runner),
            ),
        ),
    )


@unified_runner.command("tasks")
@click.option(
    "--registry",
    "registry_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
)
def list_tasks(registry_path: Path | None) -> None:
    """List registry tasks."""

    _emit_lines(_guard(lambda: CONTROLLER.list_tasks(ListTasksCommand(registry_path))))


@unified_runner.command("plan")
@click.option("--task", "-t", "tasks", multiple=True, required=True)
@click.option(
    "--registry",
    "registry_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
)
def plan(tasks: tuple[str, ...], registry_path: Path | None) -> None:
    """Print resolved batches without executing anything."""

    _emit_lines(
        _guard(lambda: CONTROLLER.plan(PlanCommand(tasks=tasks, registry_path=registry_path))),
    )


@unified_runner.command("install")
@click.argument("packages", nargs=-1)
@click.option("--cwd", type=_EXISTING_DIR, default=None, help="Project root.")
@click.option("--package-manager", type=_PACKAGE_MANAGER_CHOICE, default=None)
@click.option("--no-fallback", is_flag=True)
@click.option("--dry", "-d", "dry_run", is_flag=True)
@click.option("--verbose", "-v", is_flag=True)
def install(  # noqa: PLR0913
    packages: tuple[str, ...],
    cwd: Path | None,
    package_manager: str | None,
    no_fallback: bool,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Install dependencies, falling back deno -> bun -> npm."""

    _configure_logging(verbose=verbose)
    _finish(
        _guard(
            lambda: CONTROLLER.install(
                InstallCommand(
                    packages=packages,
                    cwd=cwd,
                    package_manager=package_manager,
                    no_fallback=no_fallback,
                    dry_run=dry_run,
                    verbose=verbose,
                ),
            ),
        ),
    )


@unified_runner.command("clean")
@click.option("--cwd", type=_EXISTING_DIR, default=None, help="Project root.")
@click.option("--dry", "-d", "dry_run", is_flag=True)
def clean(cwd: Path | None, dry_run: bool) -> None:
    """Remove build artifacts and reset task-runner caches."""

    _configure_logging(verbose=False)
    _emit_lines(_guard(lambda: CONTROLLER.clean(CleanCommand(cwd=cwd, dry_run=dry_run))))


@unified_runner.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
)
def history(db_path: Path | None, limit: int) -> None:
    """List recent runs."""

    _emit_lines(_guard(lambda: CONTROLLER.history(HistoryCommand(db_path=db_path, limit=limit))))


@unified_runner.command("inspect")
@click.argument("run_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def inspect_run(run_id: str, db_path: Path | None) -> None:
    """Show task results of one recorded run (id or unique prefix)."""

    _finish(_guard(lambda: CONTROLLER.inspect_run(InspectRunCommand(run_id, db_path=db_path))))


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except ConfigurationError as error:
        raise ConfigurationFailure(str(error)) from error


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        click.get_current_context().exit(result.exit_code)


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[
            RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=verbose),
        ],
        force=True,
    )


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    unified_runner()
