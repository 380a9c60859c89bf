"""Resolve requested tasks and their transitive dependencies into batches.

Batch depth definition::

    depth[t] = 0                                 if t has no dependencies
    depth[t] = 1 + max(depth[d] for d in deps)   otherwise

Tasks sharing a depth form one batch; batches run in ascending depth so a
task's dependencies always finish in a strictly earlier batch.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from unified_runner.orchestrator.errors import DependencyCycleError, UnknownTaskError
from unified_runner.orchestrator.registry import TaskRegistry

Batch = list[str]


class DependencyResolver:
    """Level-based topological ordering with cycle detection."""

    def resolve(self, requested_tasks: Iterable[str], registry: TaskRegistry) -> list[Batch]:
        requested = list(dict.fromkeys(requested_tasks))
        for name in requested:
            if name not in registry:
                raise UnknownTaskError(name)

        depths: dict[str, int] = {}
        for name in sorted(requested, key=registry.registration_index):
            self._depth(name, registry=registry, depths=depths)

        if not depths:
            return []
        batches: list[Batch] = [[] for _ in range(max(depths.values()) + 1)]
        for name in sorted(depths, key=registry.registration_index):
            batches[depths[name]].append(name)
        return batches

    def _depth(self, root: str, *, registry: TaskRegistry, depths: dict[str, int]) -> int:
        """Post-order walk from ``root`` with an explicit stack.

        The stack holds the current dependency path, so meeting a task that is
        already on it closes a cycle.
        """

        if root in depths:
            return depths[root]

        stack: list[tuple[str, Iterator[str]]] = [(root, iter(registry[root].dependencies))]
        on_path: dict[str, int] = {root: 0}
        while stack:
            name, pending = stack[-1]
            dependency = next(pending, None)
            if dependency is None:
                stack.pop()
                del on_path[name]
                depths[name] = max(
                    (1 + depths[dep] for dep in registry[name].dependencies),
                    default=0,
                )
                continue
            if dependency in depths:
                continue
            if dependency in on_path:
                cycle = [entry for entry, _ in stack[on_path[dependency] :]]
                raise DependencyCycleError([*cycle, dependency])
            if dependency not in registry:
                raise UnknownTaskError(dependency, required_by=name)
            on_path[dependency] = len(stack)
            stack.append((dependency, iter(registry[dependency].dependencies)))
        return depths[root]
