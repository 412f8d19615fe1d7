from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from clusterwatch.core.errors import MonitoringConflictError


logger = logging.getLogger(__name__)

Cycle = Callable[[], Awaitable[bool]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Fire callbacks on the running event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback)


_default_scheduler: Scheduler = AsyncioScheduler()


def get_scheduler() -> Scheduler:
    # Module-level accessor so tests can swap in a manual scheduler.
    return _default_scheduler


class RepeatingTask:
    """A cancellable, self-rescheduling cycle.

    The next cycle is scheduled only after the previous one has finished, so
    cycles never overlap. ``stop()`` cancels the pending timer; a cycle that is
    already running completes but is never rescheduled.
    """

    def __init__(
        self,
        key: str,
        cycle: Cycle,
        *,
        interval_s: float,
        scheduler: Scheduler | None = None,
        on_finished: Callable[["RepeatingTask"], None] | None = None,
    ) -> None:
        self.key = key
        self.interval_s = interval_s
        self._cycle = cycle
        self._scheduler = scheduler or get_scheduler()
        self._on_finished = on_finished
        self._handle: TimerHandle | None = None
        self._current: asyncio.Future | None = None
        self._stopped = False
        self._finished = False
        self._done = asyncio.Event()
        self.cycles_run = 0

    @property
    def alive(self) -> bool:
        # A stopped task stays alive until its in-flight cycle settles.
        return not self._finished

    @property
    def running(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        self._schedule(0.0)

    def _schedule(self, delay: float) -> None:
        self._handle = self._scheduler.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if self._stopped:
            self._finish()
            return
        self._current = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        keep_going = False
        try:
            keep_going = await self._cycle()
        except asyncio.CancelledError:
            self._stopped = True
            self._finish()
            raise
        except Exception:  # noqa: BLE001 - a failed cycle must not kill the loop
            logger.exception("repeating_task_cycle_failed key=%s", self.key)
            keep_going = True
        finally:
            self.cycles_run += 1
        if keep_going and not self._stopped:
            self._schedule(self.interval_s)
        else:
            self._finish()

    def stop(self) -> None:
        self._stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        # An in-flight cycle finishes the task itself once it settles.
        if not self.running:
            self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._done.set()
        if self._on_finished is not None:
            self._on_finished(self)

    async def join(self) -> None:
        await self._done.wait()

    async def wait_for_cycle(self) -> None:
        # Wait for the cycle currently in flight, if any.
        if self._current is not None:
            await self._current


class TaskRegistry:
    """Live repeating tasks keyed by monitored database id."""

    def __init__(self) -> None:
        self._tasks: dict[str, RepeatingTask] = {}

    def get(self, key: str) -> RepeatingTask | None:
        return self._tasks.get(key)

    def is_live(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and task.alive

    def register(self, task: RepeatingTask) -> None:
        existing = self._tasks.get(task.key)
        if existing is not None and existing.alive:
            raise MonitoringConflictError(task.key)
        self._tasks[task.key] = task

    def unregister(self, task: RepeatingTask) -> None:
        # Only drop the entry if it still points at this task; a restart may have replaced it.
        if self._tasks.get(task.key) is task:
            del self._tasks[task.key]

    def stop(self, key: str) -> RepeatingTask | None:
        task = self._tasks.get(key)
        if task is not None:
            task.stop()
        return task

    def stop_all(self) -> list[RepeatingTask]:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.stop()
        return tasks
