"""Spawner interface for running one external process."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True)
class ProcessRunRequest:
    """Inputs required to run one child process."""

    argv: list[str]
    timeout_seconds: float
    cwd: str | None = None
    stream_output: bool = False
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessRunResult:
    """Exit status and captured output of a child process."""

    exit_code: int
    timed_out: bool
    stdout: str = ""
    stderr: str = ""


class ProcessSpawner(Protocol):
    """Protocol implemented by process spawners."""

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        """Run the process to completion or timeout and return its outcome."""
