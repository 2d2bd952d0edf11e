"""
Settlement Engine - Unmatched-Event Ledger.

Append-only record of events that correlated to no unique
settlement record. Entries are never deleted or retried;
operators resolve them by hand.
"""

import logging
from typing import Any, Dict, List, Optional

from .clock import ClockProtocol, SystemClock
from .store.base import SettlementStore, UnmatchedEventEntry
from .types import SettlementEvent


logger = logging.getLogger(__name__)


class UnmatchedEventLedger:
    """Facade over the store's unmatched-event table."""

    def __init__(self, store: SettlementStore, clock: Optional[ClockProtocol] = None):
        self._store = store
        self._clock = clock or SystemClock()

    async def record(
        self,
        event: SettlementEvent,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> UnmatchedEventEntry:
        """
        Append an unmatched event.

        Redelivery of the same source event returns the existing entry.
        """
        entry = UnmatchedEventEntry.from_event(
            event, diagnostics=diagnostics, recorded_at=self._clock.now()
        )
        if await self._store.append_unmatched(entry):
            logger.info(
                f"Unmatched {event.source} event {event.source_event_id} "
                f"({event.reported_status}): {entry.diagnostics.get('reason', 'unresolved')}"
            )
            return entry

        existing = await self._store.get_unmatched_by_event_id(event.source_event_id)
        logger.debug(f"Unmatched event {event.source_event_id} already recorded")
        return existing or entry

    async def list_entries(
        self,
        limit: int = 100,
        source: Optional[str] = None,
    ) -> List[UnmatchedEventEntry]:
        return await self._store.list_unmatched(source=source, limit=limit)
