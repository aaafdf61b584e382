"""Bounded in-process queue for first delivery attempts.

A fixed pool of worker tasks drains an ``asyncio.Queue``. When the queue is
full, or not running, ``submit`` refuses the item and the caller leaves it to
the retry worker instead.
"""

import asyncio
import logging
import uuid
from typing import Optional

import httpx

from app.config import settings
from app.database import SessionFactory

logger = logging.getLogger(__name__)


class DeliveryQueue:
    def __init__(
        self,
        workers: int,
        max_size: int,
        session_factory: Optional[SessionFactory] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.workers = workers
        self.max_size = max_size
        self.session_factory = session_factory
        self.transport = transport
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_size)
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"webhook-delivery-{i}") for i in range(self.workers)
        ]
        logger.info("Webhook delivery queue started with %d workers", self.workers)

    def submit(self, delivery_id: uuid.UUID) -> bool:
        if not self.running or self._queue is None:
            return False
        try:
            self._queue.put_nowait(delivery_id)
        except asyncio.QueueFull:
            return False
        return True

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        logger.info("Webhook delivery queue stopped")

    async def _worker(self, index: int) -> None:
        from app.webhooks.dispatcher import process_delivery

        assert self._queue is not None
        queue = self._queue
        while True:
            delivery_id = await queue.get()
            try:
                await process_delivery(delivery_id, self.session_factory, self.transport)
            except Exception:
                logger.exception("Delivery worker %d failed on %s", index, delivery_id)
            finally:
                queue.task_done()


delivery_queue = DeliveryQueue(settings.webhook_queue_workers, settings.webhook_queue_max_size)
