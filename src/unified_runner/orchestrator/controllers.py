"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from unified_runner.config import Settings
from unified_runner.orchestrator.backend import ProcessSpawner, SubprocessSpawner
from unified_runner.orchestrator.capabilities import CapabilityDetector
from unified_runner.orchestrator.engine import Orchestrator
from unified_runner.orchestrator.executor import Executor
from unified_runner.orchestrator.errors import ConfigurationError
from unified_runner.orchestrator.history import RunHistoryRepository
from unified_runner.orchestrator.maintenance import clean, install, setup_cloud_cache
from unified_runner.orchestrator.models import (
    BackendId,
    CacheStrategy,
    ExecuteOptions,
    RunnerCapabilities,
    RunPreferences,
    RunSummary,
)
from unified_runner.orchestrator.registry import TaskRegistry, load_registry
from unified_runner.orchestrator.reporting import (
    render_plan_lines,
    render_status_lines,
    render_summary_lines,
    summary_to_json,
    write_reports,
)
from unified_runner.orchestrator.resolver import DependencyResolver
from unified_runner.orchestrator.selection import RunnerSelector
from unified_runner.orchestrator.watch import PollingWatcher, WatchSession

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TASK_FAILURE = 1


@dataclass(slots=True)
class RunTasksCommand:
    """CLI input for task execution."""

    tasks: tuple[str, ...]
    frameworks: tuple[str, ...] = ()
    platforms: tuple[str, ...] = ()
    package_manager: str | None = None
    task_runner: str | None = None
    parallel: bool | None = None
    no_fallback: bool = False
    dry_run: bool = False
    verbose: bool = False
    bail: bool | None = None
    watch: bool = False
    cache: str | None = None
    cloud_cache: bool | None = None
    registry_path: Path | None = None
    cwd: Path | None = None
    report_dir: Path | None = None
    junit: bool = False
    html_report: bool = False
    json_output: bool = False
    record_history: bool = True


@dataclass(slots=True)
class StatusCommand:
    """CLI input for environment status."""

    cwd: Path | None = None
    package_manager: str | None = None
    task_runner: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    registry_path: Path | None = None


@dataclass(slots=True)
class PlanCommand:
    """CLI input for batch planning without execution."""

    tasks: tuple[str, ...]
    registry_path: Path | None = None


@dataclass(slots=True)
class InstallCommand:
    """CLI input for dependency installation."""

    packages: tuple[str, ...] = ()
    cwd: Path | None = None
    package_manager: str | None = None
    no_fallback: bool = False
    dry_run: bool = False
    verbose: bool = False


@dataclass(slots=True)
class CleanCommand:
    cwd: Path | None = None
    dry_run: bool = False


@dataclass(slots=True)
class HistoryCommand:
    db_path: Path | None = None
    limit: int = 20


@dataclass(slots=True)
class InspectRunCommand:
    run_id: str
    db_path: Path | None = None


@dataclass(slots=True)
class CommandResult:
    lines: list[str] = field(default_factory=list)
    exit_code: int = EXIT_OK


class OrchestratorCliController:
    """Coordinates planning, execution and inspection CLI operations."""

    def __init__(
        self,
        *,
        spawner: ProcessSpawner | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._spawner = spawner or SubprocessSpawner()
        self._which = which

    def run_tasks(
        self,
        command: RunTasksCommand,
        *,
        echo: Callable[[str], None] | None = None,
        stop_event: threading.Event | None = None,
    ) -> CommandResult:
        """Resolve, execute and report the requested tasks.

        Configuration errors (cycle, unknown task, bad registry) propagate
        before anything is executed.
        """

        emit = echo or (lambda _line: None)
        settings = _settings_for_run(command)
        registry = _load_registry(settings)
        cwd = _resolve_cwd(command.cwd)
        DependencyResolver().resolve(command.tasks, registry)

        capabilities = self._detect(settings, cwd)
        if settings.runner.cloud_cache:
            self._setup_cloud_cache(
                settings=settings,
                capabilities=capabilities,
                cwd=cwd,
                dry_run=command.dry_run,
            )

        if command.watch:
            return self._watch(
                command=command,
                settings=settings,
                registry=registry,
                cwd=cwd,
                emit=emit,
                stop_event=stop_event,
            )

        orchestrator = self._orchestrator_for_run(
            command=command,
            settings=settings,
            registry=registry,
            capabilities=capabilities,
            cwd=cwd,
            emit=emit,
        )
        summary = orchestrator.run(command.tasks)
        lines = self._finish_run(command=command, settings=settings, summary=summary)
        return CommandResult(
            lines=lines,
            exit_code=EXIT_OK if summary.succeeded else EXIT_TASK_FAILURE,
        )

    def status(self, command: StatusCommand) -> list[str]:
        settings = _load_settings(
            package_manager=command.package_manager,
            task_runner=command.task_runner,
        )
        cwd = _resolve_cwd(command.cwd)
        capabilities = self._detect(settings, cwd)
        return [
            f"Working directory: {cwd}",
            *render_status_lines(
                capabilities=capabilities,
                preferences=_preferences(settings),
            ),
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _load_settings(command.registry_path)
        registry = _load_registry(settings)
        lines = [f"Tasks: {len(registry)}"]
        for task in registry:
            flags = []
            if task.parallel_safe:
                flags.append("parallel")
            if task.cacheable:
                flags.append("cache")
            if task.cloud_cacheable:
                flags.append("cloud-cache")
            lines.append(
                f"  {task.name} runner={task.preferred_runner.value} "
                f"deps={','.join(task.dependencies) or '-'} "
                f"fallbacks={','.join(step.runner.value for step in task.fallbacks) or '-'} "
                f"timeout={task.timeout_seconds:g}s retries={task.retries} "
                f"flags={','.join(flags) or '-'}",
            )
            if task.description:
                lines.append(f"    {task.description}")
        return lines

    def plan(self, command: PlanCommand) -> list[str]:
        settings = _load_settings(command.registry_path)
        registry = _load_registry(settings)
        return render_plan_lines(DependencyResolver().resolve(command.tasks, registry))

    def install(self, command: InstallCommand) -> CommandResult:
        settings = _load_settings(package_manager=command.package_manager)
        if command.no_fallback:
            settings.runner.fallback_enabled = False
        cwd = _resolve_cwd(command.cwd)
        capabilities = self._detect(settings, cwd)
        result = install(
            command.packages,
            executor=Executor(
                spawner=self._spawner,
                capabilities=capabilities,
                executables=settings.runner.executables,
            ),
            capabilities=capabilities,
            options=ExecuteOptions(
                dry_run=command.dry_run,
                verbose=command.verbose,
                fallback_enabled=settings.runner.fallback_enabled,
                cwd=str(cwd),
            ),
            preferred=settings.runner.package_manager,
        )
        runner = result.runner_used.value if result.runner_used else "-"
        if result.succeeded:
            lines = [f"Dependencies installed with {runner}"]
            if result.dry_run:
                lines.append(result.stdout)
            return CommandResult(lines=lines)
        lines = [f"Install failed: {result.error or 'all package managers failed'}"]
        for attempt in result.attempts:
            lines.append(f"  {attempt.runner.value}: exit={attempt.exit_code} $ {attempt.command}")
        return CommandResult(lines=lines, exit_code=EXIT_TASK_FAILURE)

    def clean(self, command: CleanCommand) -> list[str]:
        settings = _load_settings()
        cwd = _resolve_cwd(command.cwd)
        capabilities = self._detect(settings, cwd)
        report = clean(
            cwd,
            spawner=self._spawner,
            capabilities=capabilities,
            executables=settings.runner.executables,
            dry_run=command.dry_run,
        )
        prefix = "Would remove" if command.dry_run else "Removed"
        lines = [f"{prefix}: {path}" for path in report.removed]
        lines.extend(f"Ran: {cmd} (exit={exit_code})" for cmd, exit_code in report.commands)
        lines.extend(f"Skipped: {cmd} (runner unavailable)" for cmd in report.skipped_commands)
        if not lines:
            lines.append("Nothing to clean")
        return lines

    def history(self, command: HistoryCommand) -> list[str]:
        settings = _load_settings()
        with _history(command.db_path or settings.history.db_path) as repository:
            runs = repository.list_runs(limit=command.limit)
        lines = [f"Runs: {len(runs)}"]
        for run in runs:
            status = "succeeded" if run.succeeded else "failed"
            mode = " dry-run" if run.dry_run else ""
            lines.append(
                f"  {run.run_id} {run.started_at.isoformat()} {status}{mode} "
                f"tasks={','.join(run.requested_tasks)} duration={run.duration_ms}ms",
            )
        return lines

    def inspect_run(self, command: InspectRunCommand) -> CommandResult:
        settings = _load_settings()
        with _history(command.db_path or settings.history.db_path) as repository:
            details = repository.get_run(command.run_id)
        if details is None:
            return CommandResult(
                lines=[f"Run not found: {command.run_id}"],
                exit_code=EXIT_TASK_FAILURE,
            )

        run = details.run
        lines = [
            f"Run: {run.run_id}",
            f"Status: {'succeeded' if run.succeeded else 'failed'}",
            f"Requested: {', '.join(run.requested_tasks)}",
            f"Started: {run.started_at.isoformat()}",
            f"Finished: {run.finished_at.isoformat() if run.finished_at else '-'}",
            f"Duration: {run.duration_ms}ms",
            f"Batches: {run.batch_count}",
            f"Bailed: {'yes' if run.bailed else 'no'}",
            f"Results: {len(details.results)}",
        ]
        for result in details.results:
            lines.append(
                f"  {result.task_name} runner={result.runner_used or '-'} "
                f"{'ok' if result.succeeded else 'FAILED'} "
                f"class={result.failure_class or '-'} attempts={len(result.attempts)} "
                f"duration={result.duration_ms}ms",
            )
            for attempt in result.attempts:
                lines.append(
                    f"    {attempt['runner']}: exit={attempt['exit_code']} "
                    f"class={attempt['failure_class'] or '-'}",
                )
        return CommandResult(lines=lines)

    def _detect(self, settings: Settings, cwd: Path) -> RunnerCapabilities:
        return CapabilityDetector(
            spawner=self._spawner,
            cwd=cwd,
            executables=settings.runner.executables,
            detect_timeout_seconds=settings.runner.detect_timeout_seconds,
            which=self._which,
        ).detect()

    def _setup_cloud_cache(
        self,
        *,
        settings: Settings,
        capabilities: RunnerCapabilities,
        cwd: Path,
        dry_run: bool,
    ) -> None:
        report = setup_cloud_cache(
            cwd,
            spawner=self._spawner,
            capabilities=capabilities,
            executables=settings.runner.executables,
            dry_run=dry_run,
        )
        for cmd, exit_code in report.commands:
            if exit_code == 0:
                logger.info("Cloud cache configured: %s", cmd)
            else:
                logger.warning("Cloud cache setup failed: %s (exit=%d)", cmd, exit_code)
        if not report.commands:
            logger.warning("Cloud cache requested but neither NX nor Turborepo is available")

    def _orchestrator_for_run(  # noqa: PLR0913
        self,
        *,
        command: RunTasksCommand,
        settings: Settings,
        registry: TaskRegistry,
        capabilities: RunnerCapabilities,
        cwd: Path,
        emit: Callable[[str], None],
    ) -> Orchestrator:
        for issue in capabilities.environment_issues():
            logger.warning("Environment: %s", issue)
        return self._build_orchestrator(
            settings=settings,
            registry=registry,
            capabilities=capabilities,
            options=ExecuteOptions(
                dry_run=command.dry_run,
                verbose=command.verbose,
                fallback_enabled=settings.runner.fallback_enabled,
                cache_strategy=settings.runner.cache_strategy,
                cloud_cache=settings.runner.cloud_cache,
                frameworks=command.frameworks,
                platforms=command.platforms,
                cwd=str(cwd),
            ),
            on_progress=emit if command.verbose else None,
        )

    def _build_orchestrator(
        self,
        *,
        settings: Settings,
        registry: TaskRegistry,
        capabilities: RunnerCapabilities,
        options: ExecuteOptions,
        on_progress: Callable[[str], None] | None,
    ) -> Orchestrator:
        return Orchestrator(
            registry=registry,
            capabilities=capabilities,
            executor=Executor(
                spawner=self._spawner,
                capabilities=capabilities,
                executables=settings.runner.executables,
            ),
            preferences=_preferences(settings),
            options=options,
            selector=RunnerSelector(settings.selection.to_policy()),
            parallel=settings.runner.parallel,
            bail=settings.runner.bail,
            max_workers=settings.runner.max_workers,
            on_progress=on_progress,
        )

    def _finish_run(
        self,
        *,
        command: RunTasksCommand,
        settings: Settings,
        summary: RunSummary,
        record_history: bool = True,
    ) -> list[str]:
        lines = (
            [summary_to_json(summary)] if command.json_output else render_summary_lines(summary)
        )

        report_dir = settings.reports.output_dir
        if report_dir is not None:
            written = write_reports(
                summary,
                report_dir,
                junit=settings.reports.junit,
                html_report=settings.reports.html,
            )
            if not command.json_output:
                lines.append(f"Summary written: {written.summary_path}")
                if written.junit_path is not None:
                    lines.append(f"JUnit report written: {written.junit_path}")
                if written.html_path is not None:
                    lines.append(f"HTML report written: {written.html_path}")

        if record_history and command.record_history and settings.history.enabled:
            _record_history(settings.history.db_path, summary)
        return lines

    def _watch(  # noqa: PLR0913
        self,
        *,
        command: RunTasksCommand,
        settings: Settings,
        registry: TaskRegistry,
        cwd: Path,
        emit: Callable[[str], None],
        stop_event: threading.Event | None,
    ) -> CommandResult:
        def run_once(_changed: list[str]) -> None:
            # Backends may be installed or removed between runs.
            orchestrator = self._orchestrator_for_run(
                command=command,
                settings=settings,
                registry=registry,
                capabilities=self._detect(settings, cwd),
                cwd=cwd,
                emit=emit,
            )
            summary = orchestrator.run(command.tasks)
            for line in self._finish_run(
                command=command,
                settings=settings,
                summary=summary,
                record_history=False,
            ):
                emit(line)

        watch_settings = settings.watch
        session = WatchSession(
            run=run_once,
            source=PollingWatcher(
                [path if path.is_absolute() else cwd / path for path in watch_settings.paths],
                extensions=watch_settings.extensions,
            ),
            debounce_seconds=watch_settings.debounce_seconds,
            poll_interval_seconds=watch_settings.poll_interval_seconds,
            queue_size=watch_settings.queue_size,
            stop_event=stop_event,
            on_progress=emit,
        )
        try:
            runs = session.run_forever()
        except KeyboardInterrupt:
            runs = session.runs
        return CommandResult(lines=[f"Watch stopped after {runs} runs"])


def _settings_for_run(command: RunTasksCommand) -> Settings:
    settings = _load_settings(
        command.registry_path,
        package_manager=command.package_manager,
        task_runner=command.task_runner,
    )
    runner = settings.runner
    if command.parallel is not None:
        runner.parallel = command.parallel
    if command.no_fallback:
        runner.fallback_enabled = False
    if command.bail is not None:
        runner.bail = command.bail
    if command.cache is not None:
        try:
            runner.cache_strategy = CacheStrategy(command.cache.lower())
        except ValueError as error:
            raise ConfigurationError(f"Invalid configuration: {error}") from error
    if command.cloud_cache is not None:
        runner.cloud_cache = command.cloud_cache
    if command.report_dir is not None:
        settings.reports.output_dir = command.report_dir
    if command.junit:
        settings.reports.junit = True
    if command.html_report:
        settings.reports.html = True
    return settings


def _load_settings(
    registry_path: Path | None = None,
    *,
    package_manager: str | None = None,
    task_runner: str | None = None,
) -> Settings:
    """Environment settings with CLI backend overrides, validated."""

    try:
        settings = Settings.from_env(registry_path=registry_path)
        if package_manager is not None:
            settings.runner.package_manager = BackendId.parse(package_manager)
        if task_runner is not None:
            settings.runner.task_runner = BackendId.parse(task_runner)
        settings.validate()
    except ValueError as error:
        raise ConfigurationError(f"Invalid configuration: {error}") from error
    return settings


def _preferences(settings: Settings) -> RunPreferences:
    return RunPreferences(
        task_runner=settings.runner.task_runner,
        package_manager=settings.runner.package_manager,
        cache_strategy=settings.runner.cache_strategy,
    )


def _load_registry(settings: Settings) -> TaskRegistry:
    return load_registry(
        settings.registry_path,
        default_timeout_seconds=settings.runner.default_timeout_seconds,
    )


def _resolve_cwd(cwd: Path | None) -> Path:
    return (cwd or Path.cwd()).resolve()


def _record_history(db_path: Path, summary: RunSummary) -> None:
    try:
        with _history(db_path) as repository:
            repository.record_run(summary)
    except (SQLAlchemyError, OSError):
        logger.warning("Could not record run %s in %s", summary.run_id, db_path, exc_info=True)


@contextmanager
def _history(db_path: Path) -> Iterator[RunHistoryRepository]:
    repository = RunHistoryRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
