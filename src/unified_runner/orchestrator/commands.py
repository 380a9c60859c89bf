"""Render a task command template into backend-specific argv."""

from __future__ import annotations

import shlex
from collections.abc import Mapping

from unified_runner.orchestrator.capabilities import DEFAULT_EXECUTABLES
from unified_runner.orchestrator.models import (
    BackendId,
    CacheStrategy,
    ExecuteOptions,
    TaskDefinition,
)


class CommandRenderError(ValueError):
    """Command template could not be rendered into argv."""


def render_command(
    *,
    runner: BackendId,
    template: str,
    task: TaskDefinition,
    options: ExecuteOptions,
    executables: Mapping[BackendId, str] | None = None,
) -> list[str]:
    """Build the concrete argv for ``runner`` from ``template`` and run filters."""

    executable = {**DEFAULT_EXECUTABLES, **(executables or {})}[runner]
    head = shlex.split(executable)
    if not head:
        raise CommandRenderError(f"Empty executable configured for runner {runner.value}")

    try:
        rendered = template.format(
            frameworks=_quote_csv(options.frameworks),
            platforms=_quote_csv(options.platforms),
        )
        args = shlex.split(rendered)
    except (KeyError, IndexError, ValueError) as error:
        raise CommandRenderError(
            f"Cannot render command template {template!r} for task {task.name!r}: {error}",
        ) from error

    if runner is BackendId.NX:
        args = _apply_nx_options(args, options=options)
    elif runner is BackendId.TURBO:
        args = _apply_turbo_options(args, task=task, options=options)
    return [*head, *args]


def format_argv(argv: list[str]) -> str:
    return shlex.join(argv)


def _quote_csv(values: tuple[str, ...]) -> str:
    return shlex.quote(",".join(values)) if values else ""


def _apply_nx_options(args: list[str], *, options: ExecuteOptions) -> list[str]:
    result = list(args)
    if options.frameworks:
        projects = ",".join(options.frameworks)
        for index, arg in enumerate(result):
            if arg == "--projects" and index + 1 < len(result):
                result[index + 1] = projects
                break
            if arg.startswith("--projects="):
                result[index] = f"--projects={projects}"
                break
    if options.cache_strategy is CacheStrategy.DISABLED:
        result.append("--skip-nx-cache")
    return result


def _apply_turbo_options(
    args: list[str],
    *,
    task: TaskDefinition,
    options: ExecuteOptions,
) -> list[str]:
    result = list(args)
    filters = [*options.frameworks, *options.platforms]
    if filters:
        result.extend(["--filter", ",".join(filters)])
    if options.cache_strategy is CacheStrategy.DISABLED:
        result.append("--force")
    elif options.cloud_cache and task.cloud_cacheable:
        result.append("--remote-cache")
    return result
