"""
Event store: the idempotency ledger for Stripe event ids.

A row's presence is the only deduplication signal. The row is committed
before any side effect, so a crash mid-processing leaves an unprocessed
row behind; the processor's redelivery is then acknowledged as a duplicate
and recovery goes through an operator replay.
"""
from datetime import datetime, timezone
from typing import Optional

import structlog

from billing_ledger.core.events import ProcessorEvent
from billing_ledger.core.exceptions import DuplicateEvent
from billing_ledger.database.ledger import Ledger
from billing_ledger.database.models import ProcessedEvent

logger = structlog.get_logger(__name__)


class EventStore:
    """Records processed Stripe event ids."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    async def seen(self, event_id: str) -> bool:
        """Return True if the event id has already been recorded."""
        return await self.ledger.get_event(event_id) is not None

    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        return await self.ledger.get_event(event_id)

    async def record(self, event: ProcessorEvent) -> None:
        """
        Insert and commit the event row.

        Raises:
            DuplicateEvent: If a concurrent delivery inserted the id first
        """
        inserted = await self.ledger.insert_event_if_absent(
            event.id, event.type, event.snapshot()
        )
        if not inserted:
            raise DuplicateEvent(event.id)
        await self.ledger.commit()
        logger.info("event_recorded", event_id=event.id, event_type=event.type)

    async def mark_processed(self, event_id: str) -> None:
        """Stamp ``processed_at`` and commit."""
        await self.ledger.mark_event_processed(event_id, datetime.now(timezone.utc))
        await self.ledger.commit()
        logger.info("event_marked_processed", event_id=event_id)
