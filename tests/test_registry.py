from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from unified_runner.orchestrator.errors import RegistryError, UnknownTaskError
from unified_runner.orchestrator.models import BackendId, FallbackStep
from unified_runner.orchestrator.registry import (
    TaskRegistry,
    builtin_registry,
    load_registry,
    parse_task,
)

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Task Registry"),
]


def _write_registry(tmp_path: Path, tasks: list[dict]) -> Path:
    path = tmp_path / "tasks.json"
    path.write_text(json.dumps({"tasks": tasks}), "utf-8")
    return path


def test_builtin_registry_has_monorepo_tasks() -> None:
    registry = builtin_registry()

    assert {"build", "test", "lint", "deploy", "test:e2e"} <= set(registry.names())
    build = registry["build"]
    assert build.preferred_runner is BackendId.TURBO
    assert build.dependencies == ("build-native",)
    assert [step.runner for step in build.fallbacks] == [BackendId.NX, BackendId.BUN]
    assert registry["test:e2e"].retries == 1


def test_lookup_of_missing_task_raises_unknown_task() -> None:
    with pytest.raises(UnknownTaskError):
        builtin_registry()["nope"]
    assert builtin_registry().get("nope") is None


def test_load_from_json_file(tmp_path: Path) -> None:
    path = _write_registry(
        tmp_path,
        [
            {"name": "A", "command": "run a", "runner": "bun"},
            {
                "name": "B",
                "command": "build",
                "runner": "TURBO",
                "dependencies": ["A"],
                "fallbacks": [{"runner": "npm", "command": "run build"}],
                "parallel_safe": False,
                "cacheable": True,
                "cloud_cacheable": True,
                "retries": 2,
                "timeout_seconds": 30,
                "platforms": ["web"],
                "description": "build it",
            },
        ],
    )

    registry = load_registry(path)

    assert registry.names() == ["A", "B"]
    task = registry["B"]
    assert task.preferred_runner is BackendId.TURBO
    assert task.fallbacks == (FallbackStep(runner=BackendId.NPM, command="run build"),)
    assert task.parallel_safe is False
    assert task.cloud_cacheable is True
    assert task.retries == 2
    assert task.timeout_seconds == 30.0
    assert task.platforms == ("web",)
    assert registry.registration_index("B") == 1


def test_default_timeout_applies_when_omitted(tmp_path: Path) -> None:
    path = _write_registry(tmp_path, [{"name": "A", "command": "run a", "runner": "bun"}])

    registry = load_registry(path, default_timeout_seconds=42)

    assert registry["A"].timeout_seconds == 42.0


def test_load_without_path_uses_builtin_table() -> None:
    assert load_registry(None).names() == builtin_registry().names()


@pytest.mark.parametrize(
    ("entry", "message"),
    [
        ({"command": "x", "runner": "bun"}, "non-empty 'name'"),
        ({"name": "A", "runner": "bun"}, "non-empty 'command'"),
        ({"name": "A", "command": "x", "runner": "yarn"}, "Unsupported backend"),
        (
            {"name": "A", "command": "x", "runner": "bun", "fallbacks": [{"runner": "pnpm"}]},
            "fallback requires",
        ),
        (
            {
                "name": "A",
                "command": "x",
                "runner": "bun",
                "fallbacks": [{"runner": "pnpm", "command": "y"}],
            },
            "Unsupported backend",
        ),
        ({"name": "A", "command": "x", "runner": "bun", "retries": "2"}, "'retries'"),
        ({"name": "A", "command": "x", "runner": "bun", "timeout_seconds": True}, "number"),
        ({"name": "A", "command": "x", "runner": "bun", "cacheable": "yes"}, "boolean"),
        ({"name": "A", "command": "x", "runner": "bun", "dependencies": "B"}, "array"),
    ],
)
def test_invalid_entries_are_rejected(entry: dict, message: str) -> None:
    with pytest.raises(RegistryError, match=message):
        parse_task(entry)


def test_self_dependency_is_rejected(make_task) -> None:
    with pytest.raises(RegistryError, match="cannot depend on itself"):
        TaskRegistry([make_task("A", dependencies=("A",))])


def test_duplicate_names_are_rejected(make_task) -> None:
    with pytest.raises(RegistryError, match="Duplicate"):
        TaskRegistry([make_task("A"), make_task("A")])


def test_unknown_placeholder_is_rejected_at_load(make_task) -> None:
    with pytest.raises(RegistryError, match="placeholder"):
        TaskRegistry([make_task("A", command="run {target}")])


def test_negative_retries_and_timeout_are_rejected(make_task) -> None:
    with pytest.raises(RegistryError, match="retries"):
        TaskRegistry([make_task("A", retries=-1)])
    with pytest.raises(RegistryError, match="timeout_seconds"):
        TaskRegistry([make_task("A", timeout_seconds=0)])


@pytest.mark.parametrize(
    "content",
    ["not json", json.dumps([]), json.dumps({"tasks": {}})],
)
def test_malformed_registry_file(tmp_path: Path, content: str) -> None:
    path = tmp_path / "tasks.json"
    path.write_text(content, "utf-8")

    with pytest.raises(RegistryError):
        TaskRegistry.from_file(path)


def test_missing_registry_file(tmp_path: Path) -> None:
    with pytest.raises(RegistryError, match="Cannot read"):
        TaskRegistry.from_file(tmp_path / "absent.json")
