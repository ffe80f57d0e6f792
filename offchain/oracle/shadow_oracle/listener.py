"""
Swipe listener - observes newly created PENDING intents.

The listener never changes intent state; it only hands snapshots to the
subscribed handlers in the order the source delivers them.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from .db import IntentStore
from .models import SwipeSnapshot

logger = structlog.get_logger()

SwipeHandler = Callable[[SwipeSnapshot], Awaitable[None]]


class StorePollingSource:
    """
    Event source that polls the store for PENDING rows.

    Rows are read in (created_at, id) order past a cursor, so each row is
    delivered once per process. Rows created while the source was failing
    are picked up by the next successful poll.
    """

    def __init__(self, store: IntentStore, batch_size: int = 100):
        self.store = store
        self.batch_size = batch_size
        self.cursor: Optional[tuple[datetime, str]] = None

    async def fetch(self) -> list[SwipeSnapshot]:
        intents = await asyncio.to_thread(
            self.store.fetch_pending_after, self.cursor, self.batch_size
        )
        if intents:
            last = intents[-1]
            self.cursor = (last.created_at, last.id)
        return [intent.snapshot() for intent in intents]


class SwipeListener:
    """Delivers each newly observed PENDING intent to subscribed handlers."""

    def __init__(
        self,
        source: StorePollingSource,
        poll_interval_seconds: float = 2.0,
        max_backoff_seconds: float = 30.0,
    ):
        self.source = source
        self.poll_interval = poll_interval_seconds
        self.max_backoff = max_backoff_seconds
        self._handlers: list[SwipeHandler] = []
        self._running = False
        self._failures = 0

    def subscribe(self, handler: SwipeHandler) -> None:
        """Register a coroutine called once per observed intent."""
        self._handlers.append(handler)

    def backoff_delay(self) -> float:
        """Delay before the next poll after consecutive source failures."""
        if self._failures == 0:
            return self.poll_interval
        return min(self.poll_interval * (2 ** self._failures), self.max_backoff)

    async def poll_once(self) -> int:
        """
        Fetch one batch and dispatch it.

        Returns:
            Number of intents delivered
        """
        snapshots = await self.source.fetch()
        for snapshot in snapshots:
            logger.info(
                "swipe_observed",
                intent_id=snapshot.id,
                nonce=snapshot.nonce,
                recipient=snapshot.bch_recipient,
            )
            for handler in self._handlers:
                try:
                    await handler(snapshot)
                except Exception as e:
                    logger.error("swipe_handler_error", intent_id=snapshot.id, error=str(e))
        return len(snapshots)

    async def run(self) -> None:
        """Poll until stopped, backing off while the source is unavailable."""
        self._running = True
        logger.info("listener_starting", poll_interval=self.poll_interval)

        while self._running:
            try:
                delivered = await self.poll_once()
                if self._failures:
                    logger.info("listener_reconnected", after_failures=self._failures)
                self._failures = 0
                if delivered >= self.source.batch_size:
                    # More rows may be waiting
                    continue
            except Exception as e:
                self._failures += 1
                logger.warning(
                    "listener_source_error",
                    error=str(e),
                    failures=self._failures,
                    retry_in=self.backoff_delay(),
                )

            await asyncio.sleep(self.backoff_delay())

        logger.info("listener_stopped")

    def stop(self) -> None:
        """Stop the listener after the current poll."""
        self._running = False
        logger.info("listener_stopping")
