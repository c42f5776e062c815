"""Filesystem watching for live reload, backed by watchfiles."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from itertools import groupby
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional, Sequence

from watchfiles import DefaultFilter, awatch

logger = logging.getLogger(__name__)

MAX_WATCH_FAILURES = 3
RETRY_DELAY = 1.0
# Milliseconds; the burst window itself is applied by ChangeCoalescer.
WATCHFILES_DEBOUNCE = 50
WATCHFILES_STEP = 50


class WatchSetupError(Exception):
    """A configured watch target could not be watched."""

    def __init__(self, target: "WatchTarget", reason: str):
        super().__init__(f"cannot watch {target.path}: {reason}")
        self.target = target
        self.reason = reason


@dataclass(frozen=True)
class WatchTarget:
    path: Path
    recursive: bool = True


@dataclass(frozen=True)
class ChangeEvent:
    """Something under a watched path changed."""

    path: str
    change: str


class FileWatcher:
    """Turns filesystem changes under the watch targets into ChangeEvents on a queue."""

    def __init__(
        self,
        targets: Sequence[WatchTarget],
        queue: "asyncio.Queue[ChangeEvent]",
        stop_event: Optional[asyncio.Event] = None,
        *,
        retry_delay: float = RETRY_DELAY,
    ):
        self._targets = list(targets)
        self._queue = queue
        self._stop_event = stop_event or asyncio.Event()
        self._retry_delay = retry_delay

    def usable_targets(self) -> List[WatchTarget]:
        """Targets that exist right now; missing ones are logged and skipped."""

        usable = []
        for target in self._targets:
            try:
                _check_target(target)
            except WatchSetupError as exc:
                logger.warning("%s; live reload disabled for this path", exc)
                continue
            usable.append(target)
        return usable

    def start(self) -> List["asyncio.Task[None]"]:
        """Start one watch loop per recursion mode; returns no tasks if nothing can be watched."""

        targets = self.usable_targets()
        if not targets:
            logger.warning("No watch targets available; live reload disabled")
            return []

        tasks = []
        ordered = sorted(targets, key=lambda t: t.recursive)
        for recursive, group in groupby(ordered, key=lambda t: t.recursive):
            paths = [target.path for target in group]
            logger.info(
                "Watching %s (%s)",
                ", ".join(str(p) for p in paths),
                "recursive" if recursive else "top level only",
            )
            tasks.append(asyncio.create_task(self._watch(paths, recursive)))
        return tasks

    def stop(self) -> None:
        self._stop_event.set()

    async def _watch(self, paths: List[Path], recursive: bool) -> None:
        failures = 0
        while not self._stop_event.is_set():
            try:
                async for changes in awatch(
                    *paths,
                    watch_filter=DefaultFilter(),
                    recursive=recursive,
                    debounce=WATCHFILES_DEBOUNCE,
                    step=WATCHFILES_STEP,
                    stop_event=self._stop_event,
                ):
                    failures = 0
                    for change, path in changes:
                        logger.debug("Detected %s: %s", change.name, path)
                        self._queue.put_nowait(ChangeEvent(path=path, change=change.name))
                return
            except (OSError, RuntimeError) as exc:
                failures += 1
                if failures >= MAX_WATCH_FAILURES:
                    logger.warning(
                        "Watching %s failed %s times (%s); live reload stopped",
                        ", ".join(str(p) for p in paths),
                        failures,
                        exc,
                    )
                    return
                logger.warning(
                    "Watching %s failed (%s); retrying in %.1fs",
                    ", ".join(str(p) for p in paths),
                    exc,
                    self._retry_delay,
                )
                await asyncio.sleep(self._retry_delay)


class ChangeCoalescer:
    """Merges bursts of ChangeEvents into single notifications.

    The first event opens a window of ``window`` seconds; everything that
    arrives before it closes is folded into one call to ``notify``.
    """

    def __init__(
        self,
        queue: "asyncio.Queue[ChangeEvent]",
        notify: Callable[[], object],
        window: float,
    ):
        self._queue = queue
        self._notify = notify
        self._window = window

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            batch = [await self._queue.get()]
            deadline = loop.time() + self._window
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                event = await self._get_before(remaining)
                if event is None:
                    break
                batch.append(event)
            # anything already queued at the deadline belongs to this burst
            while not self._queue.empty():
                batch.append(self._queue.get_nowait())
            self._flush(batch)

    async def _get_before(self, timeout: float) -> Optional[ChangeEvent]:
        # A get that completes while being timed out must keep its event.
        getter = asyncio.ensure_future(self._queue.get())
        try:
            await asyncio.wait({getter}, timeout=timeout)
        finally:
            if not getter.done():
                getter.cancel()
        if not getter.done():
            await asyncio.wait({getter})
        if getter.cancelled():
            return None
        return getter.result()

    def _flush(self, batch: List[ChangeEvent]) -> None:
        logger.info("%s change(s) detected, reloading browsers", len(batch))
        try:
            self._notify()
        except Exception:
            logger.exception("Reload notification failed")


@asynccontextmanager
async def watching(
    targets: Sequence[WatchTarget],
    notify: Callable[[], object],
    window: float,
) -> AsyncIterator[FileWatcher]:
    """Run the watcher and coalescer for the lifetime of the block."""

    queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue()
    watcher = FileWatcher(targets, queue)
    tasks = watcher.start()
    if tasks:
        tasks.append(asyncio.create_task(ChangeCoalescer(queue, notify, window).run()))
    try:
        yield watcher
    finally:
        watcher.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _check_target(target: WatchTarget) -> None:
    if not target.path.exists():
        raise WatchSetupError(target, "path does not exist")
    if not target.path.is_dir():
        raise WatchSetupError(target, "not a directory")
