"""Interval runner for the in-process background passes."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Calls ``pass_fn`` every ``interval`` seconds until stopped.

    ``run_once`` is the unit of work and can be called directly; the loop only
    adds timing. A failing pass is logged and the loop carries on.
    """

    def __init__(self, name: str, interval: float, pass_fn: Callable[[], Awaitable[Any]]):
        self.name = name
        self.interval = interval
        self.pass_fn = pass_fn
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        return await self.pass_fn()

    async def _loop(self) -> None:
        logger.info("Worker %s started (every %ss)", self.name, self.interval)
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Worker %s pass failed", self.name)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Worker %s stopped", self.name)

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"worker-{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.interval)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
