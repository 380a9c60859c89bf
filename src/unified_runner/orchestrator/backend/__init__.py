"""Process-spawning backends used by the executor and capability detection."""

from unified_runner.orchestrator.backend.base import (
    ProcessRunRequest,
    ProcessRunResult,
    ProcessSpawner,
)
from unified_runner.orchestrator.backend.subprocess_backend import (
    BackendRunError,
    SubprocessSpawner,
)

__all__ = [
    "BackendRunError",
    "ProcessRunRequest",
    "ProcessRunResult",
    "ProcessSpawner",
    "SubprocessSpawner",
]
