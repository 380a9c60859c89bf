"""Watch mode: poll the tree for changes and re-run after a quiet period."""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_WATCH_EXTENSIONS: tuple[str, ...] = (".ts", ".tsx", ".js", ".jsx", ".json")
DEFAULT_IGNORED_DIRS = frozenset(
    {"node_modules", ".git", "dist", ".next", ".remix", ".turbo", ".nx", "coverage"},
)


class ChangeSource(Protocol):
    """Anything that reports changed paths since its previous poll."""

    def poll(self) -> list[str]: ...


class PollingWatcher:
    """mtime-based watcher over a set of directories or files.

    The first ``poll`` records a baseline and reports nothing. Later polls
    report created, modified and deleted paths.
    """

    def __init__(
        self,
        paths: Sequence[Path],
        *,
        extensions: Iterable[str] = DEFAULT_WATCH_EXTENSIONS,
        ignored_dirs: Iterable[str] = DEFAULT_IGNORED_DIRS,
    ) -> None:
        self._paths = [Path(path) for path in paths]
        self._extensions = tuple(ext.lower() for ext in extensions)
        self._ignored_dirs = frozenset(ignored_dirs)
        self._snapshot: dict[str, float] | None = None

    def poll(self) -> list[str]:
        current = self.snapshot()
        previous, self._snapshot = self._snapshot, current
        if previous is None:
            return []
        changed = [path for path, mtime in current.items() if previous.get(path) != mtime]
        changed.extend(path for path in previous if path not in current)
        return sorted(changed)

    def snapshot(self) -> dict[str, float]:
        mtimes: dict[str, float] = {}
        for root in self._paths:
            if root.is_file():
                self._record(root, mtimes)
                continue
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = [name for name in dirnames if name not in self._ignored_dirs]
                for filename in filenames:
                    self._record(Path(dirpath) / filename, mtimes)
        return mtimes

    def _record(self, path: Path, mtimes: dict[str, float]) -> None:
        if not path.name.lower().endswith(self._extensions):
            return
        try:
            mtimes[str(path)] = path.stat().st_mtime
        except FileNotFoundError:
            return


class WatchSession:
    """Debounced re-run loop.

    A producer thread polls ``source`` and pushes change batches into a bounded
    queue. The calling thread is the single consumer: it waits for an event,
    keeps draining until ``debounce_seconds`` pass with no new events, then
    calls ``run`` once. ``run`` is synchronous, so runs never overlap; changes
    seen while a run is in flight trigger exactly one follow-up run.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        run: Callable[[list[str]], object],
        source: ChangeSource,
        debounce_seconds: float = 1.0,
        poll_interval_seconds: float = 0.5,
        queue_size: int = 64,
        stop_event: threading.Event | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self._run = run
        self._source = source
        self._debounce = debounce_seconds
        self._poll_interval = poll_interval_seconds
        self._events: queue.Queue[list[str]] = queue.Queue(maxsize=max(1, queue_size))
        self._stop = stop_event or threading.Event()
        self._on_progress = on_progress or (lambda _msg: None)
        self._producer: threading.Thread | None = None
        self.runs = 0

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self, *, initial_run: bool = True, max_runs: int | None = None) -> int:
        """Consume change events until stopped; return the number of runs made."""

        self._start_producer()
        try:
            if initial_run:
                self._trigger([])
            while not self._stop.is_set():
                if max_runs is not None and self.runs >= max_runs:
                    break
                changed = self._next_burst()
                if changed is None:
                    continue
                self._emit(f"Change detected in {len(changed)} file(s), re-running")
                self._trigger(changed)
        finally:
            self._stop_producer()
        return self.runs

    def _next_burst(self) -> list[str] | None:
        try:
            first = self._events.get(timeout=self._poll_interval)
        except queue.Empty:
            return None

        changed = dict.fromkeys(first)
        while not self._stop.is_set():
            try:
                more = self._events.get(timeout=self._debounce)
            except queue.Empty:
                break
            changed.update(dict.fromkeys(more))
        if self._stop.is_set():
            return None
        return list(changed)

    def _trigger(self, changed: list[str]) -> None:
        self.runs += 1
        try:
            self._run(changed)
        except Exception:
            logger.exception("Watch run %d crashed", self.runs)

    def _start_producer(self) -> None:
        self._source.poll()
        self._producer = threading.Thread(
            target=self._producer_loop,
            daemon=True,
            name="watch-poller",
        )
        self._producer.start()
        self._emit("Watching for changes...")

    def _stop_producer(self) -> None:
        self._stop.set()
        if self._producer is not None:
            self._producer.join(timeout=max(1.0, self._poll_interval * 4))
            self._producer = None

    def _producer_loop(self) -> None:
        while not self._stop.wait(timeout=self._poll_interval):
            try:
                changed = self._source.poll()
            except OSError:
                logger.exception("Watch poll failed")
                continue
            if not changed:
                continue
            try:
                self._events.put_nowait(changed)
            except queue.Full:
                # A re-run is already pending; this burst is covered by it.
                logger.debug("Watch queue full, dropping %d change(s)", len(changed))

    def _emit(self, msg: str) -> None:
        logger.info(msg)
        self._on_progress(msg)
