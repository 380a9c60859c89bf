"""Static task registry: task name -> immutable task definition."""

from __future__ import annotations

import json
import shlex
import string
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from unified_runner.orchestrator.errors import RegistryError, UnknownTaskError
from unified_runner.orchestrator.models import BackendId, FallbackStep, TaskDefinition

SUPPORTED_PLACEHOLDERS = frozenset({"frameworks", "platforms"})

_ALL_PROJECTS = "run-many --target={target} --projects=core,remix,nextjs --parallel"


class TaskRegistry:
    """Read-only mapping of task definitions in registration order."""

    def __init__(self, tasks: Iterable[TaskDefinition] = ()) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        self._order: dict[str, int] = {}
        for task in tasks:
            self._register(task)

    def _register(self, task: TaskDefinition) -> None:
        _validate_task(task)
        if task.name in self._tasks:
            raise RegistryError(f"Duplicate task name: {task.name!r}")
        self._order[task.name] = len(self._order)
        self._tasks[task.name] = task

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def __getitem__(self, name: str) -> TaskDefinition:
        try:
            return self._tasks[name]
        except KeyError:
            raise UnknownTaskError(name) from None

    def get(self, name: str) -> TaskDefinition | None:
        return self._tasks.get(name)

    def names(self) -> list[str]:
        return list(self._tasks)

    def registration_index(self, name: str) -> int:
        """Position of the task in registration order (used for stable ordering)."""

        return self._order[name]

    @classmethod
    def from_file(cls, path: Path, *, default_timeout_seconds: float = 600.0) -> TaskRegistry:
        """Load registry from a JSON document with a top-level ``tasks`` array."""

        try:
            raw = json.loads(path.read_text("utf-8"))
        except OSError as error:
            raise RegistryError(f"Cannot read task registry {path}: {error}") from error
        except json.JSONDecodeError as error:
            raise RegistryError(f"Task registry {path} is not valid JSON: {error}") from error
        if not isinstance(raw, dict) or not isinstance(raw.get("tasks"), list):
            raise RegistryError(f"Task registry {path} must be an object with a 'tasks' array")
        return cls(
            parse_task(entry, default_timeout_seconds=default_timeout_seconds)
            for entry in raw["tasks"]
        )


def parse_task(raw: Any, *, default_timeout_seconds: float = 600.0) -> TaskDefinition:  # noqa: C901
    """Validate one raw registry entry and build its task definition."""

    if not isinstance(raw, Mapping):
        raise RegistryError("Task entry must be an object")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise RegistryError("Task entry requires a non-empty 'name'")
    name = name.strip()
    command = raw.get("command")
    if not isinstance(command, str) or not command.strip():
        raise RegistryError(f"Task {name!r} requires a non-empty 'command'")
    runner = _parse_backend(raw.get("runner"), task_name=name)

    dependencies = raw.get("dependencies", [])
    if not isinstance(dependencies, list) or not all(
        isinstance(item, str) and item.strip() for item in dependencies
    ):
        raise RegistryError(f"Task {name!r}: 'dependencies' must be an array of task names")

    raw_fallbacks = raw.get("fallbacks", [])
    if not isinstance(raw_fallbacks, list):
        raise RegistryError(f"Task {name!r}: 'fallbacks' must be an array")
    fallbacks: list[FallbackStep] = []
    for item in raw_fallbacks:
        if not isinstance(item, Mapping):
            raise RegistryError(f"Task {name!r}: each fallback must be an object")
        fallback_command = item.get("command")
        if not isinstance(fallback_command, str) or not fallback_command.strip():
            raise RegistryError(f"Task {name!r}: fallback requires a non-empty 'command'")
        fallbacks.append(
            FallbackStep(
                runner=_parse_backend(item.get("runner"), task_name=name),
                command=fallback_command.strip(),
            ),
        )

    timeout_seconds = raw.get("timeout_seconds", default_timeout_seconds)
    if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)):
        raise RegistryError(f"Task {name!r}: 'timeout_seconds' must be a number")
    retries = raw.get("retries", 0)
    if isinstance(retries, bool) or not isinstance(retries, int):
        raise RegistryError(f"Task {name!r}: 'retries' must be an integer")
    platforms = raw.get("platforms", [])
    if not isinstance(platforms, list) or not all(isinstance(item, str) for item in platforms):
        raise RegistryError(f"Task {name!r}: 'platforms' must be an array of strings")

    return TaskDefinition(
        name=name,
        command=command.strip(),
        preferred_runner=runner,
        dependencies=_dedupe(item.strip() for item in dependencies),
        fallbacks=tuple(fallbacks),
        parallel_safe=_parse_bool(raw.get("parallel_safe", True), "parallel_safe", name),
        cacheable=_parse_bool(raw.get("cacheable", False), "cacheable", name),
        cloud_cacheable=_parse_bool(raw.get("cloud_cacheable", False), "cloud_cacheable", name),
        timeout_seconds=float(timeout_seconds),
        retries=retries,
        platforms=tuple(platforms),
        description=str(raw.get("description", "")),
    )


def _validate_task(task: TaskDefinition) -> None:
    if task.name in task.dependencies:
        raise RegistryError(f"Task {task.name!r} cannot depend on itself")
    if task.retries < 0:
        raise RegistryError(f"Task {task.name!r}: 'retries' must be >= 0")
    if task.timeout_seconds <= 0:
        raise RegistryError(f"Task {task.name!r}: 'timeout_seconds' must be > 0")
    if not isinstance(task.preferred_runner, BackendId):
        raise RegistryError(f"Task {task.name!r}: unknown runner {task.preferred_runner!r}")
    _validate_template(task.command, task_name=task.name)
    for step in task.fallbacks:
        if not isinstance(step.runner, BackendId):
            raise RegistryError(f"Task {task.name!r}: unknown fallback runner {step.runner!r}")
        _validate_template(step.command, task_name=task.name)


def _validate_template(template: str, *, task_name: str) -> None:
    try:
        fields = {
            field_name
            for _, field_name, _, _ in string.Formatter().parse(template)
            if field_name is not None
        }
    except ValueError as error:
        raise RegistryError(
            f"Task {task_name!r}: malformed command template {template!r}: {error}",
        ) from error
    unknown = fields - SUPPORTED_PLACEHOLDERS
    if unknown:
        raise RegistryError(
            f"Task {task_name!r}: unsupported command template placeholder(s): "
            f"{', '.join(sorted(unknown))}",
        )
    try:
        shlex.split(template)
    except ValueError as error:
        raise RegistryError(
            f"Task {task_name!r}: unbalanced quoting in command template {template!r}",
        ) from error


def _parse_backend(value: Any, *, task_name: str) -> BackendId:
    if not isinstance(value, str):
        raise RegistryError(f"Task {task_name!r}: 'runner' must be a backend id string")
    try:
        return BackendId.parse(value)
    except ValueError as error:
        raise RegistryError(f"Task {task_name!r}: {error}") from error


def _parse_bool(value: Any, field_name: str, task_name: str) -> bool:
    if not isinstance(value, bool):
        raise RegistryError(f"Task {task_name!r}: {field_name!r} must be a boolean")
    return value


def _dedupe(values: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return tuple(seen)


def _task(  # noqa: PLR0913
    name: str,
    command: str,
    runner: BackendId,
    *,
    dependencies: tuple[str, ...] = (),
    fallbacks: tuple[tuple[BackendId, str], ...] = (),
    parallel_safe: bool = True,
    cacheable: bool = True,
    cloud_cacheable: bool = False,
    timeout_seconds: float = 600.0,
    retries: int = 0,
    platforms: tuple[str, ...] = (),
    description: str = "",
) -> TaskDefinition:
    return TaskDefinition(
        name=name,
        command=command,
        preferred_runner=runner,
        dependencies=dependencies,
        fallbacks=tuple(
            FallbackStep(runner=fb_runner, command=cmd) for fb_runner, cmd in fallbacks
        ),
        parallel_safe=parallel_safe,
        cacheable=cacheable,
        cloud_cacheable=cloud_cacheable,
        timeout_seconds=timeout_seconds,
        retries=retries,
        platforms=platforms,
        description=description,
    )


BUILTIN_TASKS: tuple[TaskDefinition, ...] = (
    _task(
        "dev",
        _ALL_PROJECTS.format(target="dev"),
        BackendId.NX,
        fallbacks=((BackendId.TURBO, "dev"), (BackendId.BUN, "run dev")),
        parallel_safe=False,
        cacheable=False,
        timeout_seconds=86_400,
        description="Development servers for all frameworks",
    ),
    _task("dev:core", "dev core", BackendId.NX, parallel_safe=False, cacheable=False),
    _task("dev:remix", "dev remix", BackendId.NX, parallel_safe=False, cacheable=False),
    _task("dev:nextjs", "dev nextjs", BackendId.NX, parallel_safe=False, cacheable=False),
    _task(
        "build-native",
        "task build-native",
        BackendId.DENO,
        fallbacks=((BackendId.BUN, "run build-native"),),
        cloud_cacheable=True,
        description="Native shared library build",
    ),
    _task(
        "build",
        "build",
        BackendId.TURBO,
        dependencies=("build-native",),
        fallbacks=(
            (BackendId.NX, _ALL_PROJECTS.format(target="build")),
            (BackendId.BUN, "run build"),
        ),
        cloud_cacheable=True,
        description="Production build of every framework",
    ),
    _task("build:web", "build:web", BackendId.TURBO, cloud_cacheable=True, platforms=("web",)),
    _task(
        "build:desktop",
        "build:desktop",
        BackendId.TURBO,
        dependencies=("build-native", "build:web"),
        cloud_cacheable=True,
        platforms=("desktop",),
    ),
    _task(
        "build:mobile",
        "build:mobile",
        BackendId.TURBO,
        dependencies=("build-native", "build:web"),
        cloud_cacheable=True,
        platforms=("mobile",),
    ),
    _task(
        "test",
        "run --allow-all tests/run-all.ts",
        BackendId.DENO,
        fallbacks=(
            (
                BackendId.NX,
                "run-many --target=test --projects=core,remix,nextjs,shared --parallel",
            ),
            (BackendId.BUN, "test"),
        ),
        description="Full test suite",
    ),
    _task(
        "test:unit",
        "test --allow-all tests/unit",
        BackendId.DENO,
        fallbacks=((BackendId.BUN, "test tests/unit"),),
        timeout_seconds=45,
    ),
    _task(
        "test:integration",
        "test --allow-all tests/integration",
        BackendId.DENO,
        dependencies=("test:unit",),
        parallel_safe=False,
        timeout_seconds=60,
    ),
    _task(
        "test:performance",
        "test --allow-all tests/performance",
        BackendId.DENO,
        dependencies=("test:unit",),
        parallel_safe=False,
        cacheable=False,
        timeout_seconds=120,
    ),
    _task(
        "test:e2e",
        "test --allow-all tests/e2e",
        BackendId.DENO,
        dependencies=("test:unit",),
        cacheable=False,
        timeout_seconds=300,
        retries=1,
    ),
    _task(
        "lint",
        "lint",
        BackendId.TURBO,
        fallbacks=(
            (BackendId.NX, "run-many --target=lint --projects=core,remix,nextjs,shared --parallel"),
            (BackendId.BUN, "run lint"),
        ),
        cloud_cacheable=True,
    ),
    _task("typecheck", "check-types", BackendId.TURBO, cloud_cacheable=True),
    _task(
        "deploy",
        _ALL_PROJECTS.format(target="deploy"),
        BackendId.NX,
        dependencies=("build",),
        parallel_safe=False,
        cacheable=False,
        description="Deploy every framework after a full build",
    ),
)


def builtin_registry() -> TaskRegistry:
    """Registry shipped with the runner for the default monorepo layout."""

    return TaskRegistry(BUILTIN_TASKS)


def load_registry(path: Path | None, *, default_timeout_seconds: float = 600.0) -> TaskRegistry:
    """Load the registry from file when configured, otherwise the built-in table."""

    if path is None:
        return builtin_registry()
    return TaskRegistry.from_file(path, default_timeout_seconds=default_timeout_seconds)
