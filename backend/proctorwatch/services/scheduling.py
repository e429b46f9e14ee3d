"""
Periodic jobs sharing one stop event per owner.

A PeriodicScheduler owns every periodic job of one component (an
enforcement loop, a risk engine). shutdown() sets the shared stop event
and cancels and awaits every child, so nothing re-arms after it returns.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[None]]


class PeriodicTask:
    """
    Runs an async action every `interval` seconds until the stop event is set.

    Ticks never overlap: when a tick overruns, the missed ticks are
    skipped instead of queued. Exceptions from the action are logged and
    the next tick proceeds.
    """

    def __init__(self, name: str, interval: float, action: Action, stop_event: asyncio.Event):
        self.name = name
        self.interval = interval
        self.action = action
        self.stop_event = stop_event
        self.ticks = 0
        self.skipped = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while not self.stop_event.is_set():
            try:
                await self.action()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception(f"Periodic task '{self.name}' tick failed")
            self.ticks += 1

            next_tick += self.interval
            now = loop.time()
            if now >= next_tick:
                missed = int((now - next_tick) // self.interval) + 1
                self.skipped += missed
                next_tick += missed * self.interval
                logger.debug(f"Periodic task '{self.name}' overran; skipped {missed} tick(s)")

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                pass

    async def cancel(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


class PeriodicScheduler:
    """One cancellation point for every periodic job of an owner"""

    def __init__(self, owner: str):
        self.owner = owner
        self.stop_event = asyncio.Event()
        self._tasks: Dict[str, PeriodicTask] = {}

    def every(self, name: str, interval: float, action: Action) -> PeriodicTask:
        """Schedule `action`; a job already running under `name` is kept as is"""
        existing = self._tasks.get(name)
        if existing is not None and existing.running:
            return existing

        if self.stop_event.is_set():
            self.stop_event = asyncio.Event()
        task = PeriodicTask(f"{self.owner}:{name}", interval, action, self.stop_event)
        self._tasks[name] = task
        task.start()
        return task

    @property
    def active(self) -> List[str]:
        return sorted(name for name, task in self._tasks.items() if task.running)

    def get(self, name: str) -> Optional[PeriodicTask]:
        return self._tasks.get(name)

    async def shutdown(self) -> None:
        self.stop_event.set()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        await asyncio.gather(*(task.cancel() for task in tasks))
        logger.debug(f"Scheduler {self.owner} stopped {len(tasks)} task(s)")
