"""Dependency install with package-manager fallback, artifact cleanup and remote cache setup."""

from __future__ import annotations

import logging
import shlex
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from unified_runner.orchestrator.backend import (
    BackendRunError,
    ProcessRunRequest,
    ProcessSpawner,
)
from unified_runner.orchestrator.capabilities import DEFAULT_EXECUTABLES
from unified_runner.orchestrator.executor import Executor
from unified_runner.orchestrator.models import (
    PACKAGE_MANAGERS,
    BackendId,
    ExecuteOptions,
    ExecutionResult,
    FallbackStep,
    RunnerCapabilities,
    TaskDefinition,
)

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT_SECONDS = 900.0
CLEAN_TIMEOUT_SECONDS = 120.0
CLEAN_PATHS: tuple[str, ...] = ("dist", ".next", ".remix", "node_modules/.cache")
CLEAN_COMMANDS: tuple[tuple[BackendId, str], ...] = (
    (BackendId.NX, "reset"),
    (BackendId.TURBO, "prune"),
)
CLOUD_CACHE_TIMEOUT_SECONDS = 300.0
CLOUD_CACHE_COMMANDS: tuple[tuple[BackendId, str], ...] = (
    (BackendId.TURBO, "login"),
    (BackendId.NX, "connect-to-nx-cloud"),
)


def install_command(backend: BackendId, packages: Sequence[str]) -> str:
    """Install command template for one package manager."""

    quoted = " ".join(shlex.quote(package) for package in packages)
    if backend is BackendId.DENO:
        if not packages:
            return "install --allow-all"
        return "add " + " ".join(shlex.quote(f"npm:{package}") for package in packages)
    return f"install {quoted}".strip()


def build_install_task(
    packages: Sequence[str],
    *,
    capabilities: RunnerCapabilities,
    preferred: BackendId = BackendId.DENO,
) -> TaskDefinition | None:
    """Synthetic task whose fallback chain walks the remaining package managers."""

    chain = [preferred, *(pm for pm in PACKAGE_MANAGERS if pm is not preferred)]
    available = [backend for backend in chain if capabilities.is_available(backend)]
    if not available:
        return None
    primary, *rest = available
    return TaskDefinition(
        name="install",
        command=install_command(primary, packages),
        preferred_runner=primary,
        fallbacks=tuple(
            FallbackStep(runner=backend, command=install_command(backend, packages))
            for backend in rest
        ),
        parallel_safe=False,
        timeout_seconds=INSTALL_TIMEOUT_SECONDS,
        description="Install dependencies",
    )


def install(
    packages: Sequence[str],
    *,
    executor: Executor,
    capabilities: RunnerCapabilities,
    options: ExecuteOptions,
    preferred: BackendId = BackendId.DENO,
) -> ExecutionResult:
    task = build_install_task(packages, capabilities=capabilities, preferred=preferred)
    if task is None:
        return ExecutionResult(
            task_name="install",
            runner_used=None,
            succeeded=False,
            duration_ms=0,
            error="No package manager available (tried deno, bun, npm)",
        )
    logger.info("Installing with %s", task.preferred_runner.value)
    return executor.execute(task, task.preferred_runner, options)


@dataclass(slots=True)
class BackendCommandsReport:
    commands: list[tuple[str, int]] = field(default_factory=list)
    skipped_commands: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CleanReport(BackendCommandsReport):
    removed: list[Path] = field(default_factory=list)


def clean(
    root: Path,
    *,
    spawner: ProcessSpawner,
    capabilities: RunnerCapabilities,
    executables: Mapping[BackendId, str] | None = None,
    dry_run: bool = False,
) -> CleanReport:
    """Remove build artifacts and reset task-runner caches; failures are ignored."""

    report = CleanReport()
    for relative in CLEAN_PATHS:
        target = root / relative
        if not target.exists():
            continue
        if not dry_run:
            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            except OSError as error:
                logger.warning("Could not remove %s: %s", target, error)
                continue
        report.removed.append(target)

    _run_backend_commands(
        report,
        CLEAN_COMMANDS,
        root=root,
        spawner=spawner,
        capabilities=capabilities,
        executables=executables,
        dry_run=dry_run,
        timeout_seconds=CLEAN_TIMEOUT_SECONDS,
    )
    return report


def setup_cloud_cache(
    root: Path,
    *,
    spawner: ProcessSpawner,
    capabilities: RunnerCapabilities,
    executables: Mapping[BackendId, str] | None = None,
    dry_run: bool = False,
) -> BackendCommandsReport:
    """Connect available task runners to their remote cache; failures only warn."""

    report = BackendCommandsReport()
    _run_backend_commands(
        report,
        CLOUD_CACHE_COMMANDS,
        root=root,
        spawner=spawner,
        capabilities=capabilities,
        executables=executables,
        dry_run=dry_run,
        timeout_seconds=CLOUD_CACHE_TIMEOUT_SECONDS,
    )
    return report


def _run_backend_commands(  # noqa: PLR0913
    report: BackendCommandsReport,
    commands: Sequence[tuple[BackendId, str]],
    *,
    root: Path,
    spawner: ProcessSpawner,
    capabilities: RunnerCapabilities,
    executables: Mapping[BackendId, str] | None,
    dry_run: bool,
    timeout_seconds: float,
) -> None:
    resolved = {**DEFAULT_EXECUTABLES, **(executables or {})}
    for backend, subcommand in commands:
        command = f"{resolved[backend]} {subcommand}"
        if not capabilities.is_available(backend):
            report.skipped_commands.append(command)
            continue
        if dry_run:
            report.commands.append((command, 0))
            continue
        try:
            result = spawner.run(
                ProcessRunRequest(
                    argv=[*shlex.split(resolved[backend]), subcommand],
                    timeout_seconds=timeout_seconds,
                    cwd=str(root),
                ),
            )
        except BackendRunError as error:
            logger.warning("Command %s failed: %s", command, error)
            report.commands.append((command, 127))
            continue
        if result.exit_code != 0:
            logger.warning("Command %s exited with %d", command, result.exit_code)
        report.commands.append((command, result.exit_code))
