"""
FAA Certification RAG - Index Worker
Polls the index queue and indexes DRS documents in the background.
"""

import asyncio
from typing import Any, Optional

from loguru import logger

from certrag.core.logging import setup_logging
from certrag.rag.index_queue import IndexProcessor, IndexQueue, ProcessOutcome
from certrag.services import ServiceContainer, build_services


class IndexWorker:
    """
    Queue consumer.

    Succeeded and malformed messages are deleted. Retryable failures are left
    on the queue and reappear after the visibility timeout; once a message has
    been dequeued more than max_dequeue_count times it moves to the poison
    queue.
    """

    def __init__(
        self,
        queue: IndexQueue,
        processor: IndexProcessor,
        poll_interval: float = 5.0,
        batch_size: int = 4,
    ):
        self.queue = queue
        self.processor = processor
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def process_message(self, message: Any) -> Optional[ProcessOutcome]:
        """Handle one dequeued message. Returns None when it was poisoned instead."""
        if (message.dequeue_count or 0) > self.queue.max_dequeue_count:
            await self.queue.move_to_poison(message)
            return None

        outcome = await self.processor.handle(message.content)
        if outcome in (ProcessOutcome.SUCCEEDED, ProcessOutcome.DISCARD):
            await self.queue.delete(message)
        else:
            logger.warning(
                f"Message {message.id} failed (attempt {message.dequeue_count}), left for redelivery"
            )
        return outcome

    async def run_once(self) -> int:
        """Receive and process one batch; returns the number of messages seen."""
        messages = await self.queue.receive(self.batch_size)
        for message in messages:
            try:
                await self.process_message(message)
            except Exception as e:
                logger.error(f"Error handling queue message {message.id}: {e}")
        return len(messages)

    async def run(self) -> None:
        if not self.queue.is_enabled:
            logger.error("Index queue not configured - worker has nothing to consume")
            return
        if not self.processor.index.embeddings.is_available:
            logger.warning("Embedding service not available - queued documents will fail until configured")

        logger.info(f"Index worker started on queue '{self.queue.queue_name}'")
        while not self._stopping.is_set():
            try:
                count = await self.run_once()
            except Exception as e:
                logger.error(f"Queue receive failed: {e}")
                count = 0

            if count == 0:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("Index worker stopped")


async def run_worker(services: Optional[ServiceContainer] = None) -> None:
    setup_logging("worker")
    owned = services is None
    services = services or build_services()
    worker = IndexWorker(
        services.queue,
        services.processor,
        poll_interval=services.settings.queue_poll_interval_seconds,
    )
    try:
        await worker.run()
    finally:
        if owned:
            await services.close()
