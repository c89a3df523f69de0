"""
Message batching.

Operators often send one logical turn as several messages (a photo, then a
caption, then a correction). BatchAggregator buffers fragments per
conversation and waits for a quiet window before handing them on as one
Intent.

Each fragment lands in exactly one Intent: when the timer fires the Batch is
taken out of the table before any await, so a fragment that arrives while
the previous Batch is being handed off opens a new Batch with its own timer.
Text and images are only associated by arriving in the same Batch.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from cierrebot.graph.state import Intent

logger = logging.getLogger(__name__)

IntentHandler = Callable[[Intent], Awaitable[None]]


@dataclass
class Batch:
    texts: list[str] = field(default_factory=list)
    image_refs: list[str] = field(default_factory=list)
    timer: asyncio.Task | None = None

    def is_empty(self) -> bool:
        return not self.texts and not self.image_refs


class BatchAggregator:
    def __init__(self, handler: IntentHandler, window: float = 5.0) -> None:
        self._handler = handler
        self.window = window
        self._batches: dict[str, Batch] = {}
        # Hand-offs in progress, kept referenced until they finish.
        self._draining: set[asyncio.Task] = set()

    def enqueue(self, conversation_id: str, text: str | None = None, image_ref: str | None = None) -> None:
        batch = self._batches.get(conversation_id)
        if batch is None:
            batch = Batch()
            self._batches[conversation_id] = batch
        if text and text.strip():
            batch.texts.append(text.strip())
        if image_ref:
            batch.image_refs.append(image_ref)

        if batch.timer is not None:
            batch.timer.cancel()
        batch.timer = asyncio.get_running_loop().create_task(self._expire(conversation_id, batch))

    def pending(self) -> list[str]:
        return list(self._batches)

    async def _expire(self, conversation_id: str, batch: Batch) -> None:
        await asyncio.sleep(self.window)
        task = asyncio.current_task()
        self._draining.add(task)
        try:
            await self._drain(conversation_id, batch)
        finally:
            self._draining.discard(task)

    async def _drain(self, conversation_id: str, batch: Batch) -> None:
        # Only the batch still registered for this conversation may be drained.
        if self._batches.get(conversation_id) is not batch:
            return
        del self._batches[conversation_id]
        batch.timer = None

        if batch.is_empty():
            logger.debug("Dropping empty batch for %s", conversation_id)
            return

        intent: Intent = {
            "conversation_id": conversation_id,
            "text": "\n".join(batch.texts),
            "texts": list(batch.texts),
            "image_refs": list(batch.image_refs),
        }
        logger.info(
            "Batch drained for %s: %d text(s), %d image(s)",
            conversation_id, len(batch.texts), len(batch.image_refs),
        )
        try:
            await self._handler(intent)
        except Exception:
            logger.exception("Intent handler failed for %s", conversation_id)

    async def flush(self, conversation_id: str) -> None:
        """Drain a conversation's batch now instead of waiting for its timer."""
        batch = self._batches.get(conversation_id)
        if batch is None:
            return
        if batch.timer is not None:
            batch.timer.cancel()
        await self._drain(conversation_id, batch)

    async def aclose(self) -> None:
        """Drain every open batch now, then wait for hand-offs already in progress."""
        for conversation_id in list(self._batches):
            await self.flush(conversation_id)
        if self._draining:
            await asyncio.gather(*self._draining, return_exceptions=True)
