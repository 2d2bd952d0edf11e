"""
Settlement Engine - In-Memory Store.

============================================================
PURPOSE
============================================================
In-process settlement store for testing and local runs.

FEATURES:
- Same uniqueness and CAS semantics as the SQL store
- Copies on read and write (no shared mutable records)
- Conflict injection to simulate competing writers

ATOMICITY:
    conditional_update never awaits between the version check
    and the write, so it is atomic on a single event loop.

============================================================
"""

import copy
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..clock import ensure_utc
from ..types import (
    DuplicateReferenceError,
    SettlementKind,
    SettlementNetwork,
    SettlementRecord,
    SettlementStatus,
    TERMINAL_STATUSES,
    utc_now,
)
from .base import RecordUpdate, SettlementStore, UnmatchedEventEntry, append_seen


logger = logging.getLogger(__name__)


class InMemorySettlementStore(SettlementStore):
    """
    In-memory settlement store.

    Mirrors the SQL store's constraints:
    - unique (kind, external_reference) where reference is set
    - unique source_event_id in the unmatched ledger
    """

    def __init__(self):
        self._records: Dict[str, SettlementRecord] = {}
        self._references: Dict[Tuple[SettlementKind, str], str] = {}
        self._unmatched: List[UnmatchedEventEntry] = []
        self._unmatched_ids: Dict[str, UnmatchedEventEntry] = {}

        self.simulated_conflicts: int = 0
        """Upcoming conditional writes that lose to a phantom writer."""

        self.update_attempts: int = 0
        """Conditional writes attempted (for tests)."""

    # --------------------------------------------------------
    # RECORDS
    # --------------------------------------------------------

    async def create_record(self, record: SettlementRecord) -> SettlementRecord:
        if record.record_id in self._records:
            raise ValueError(f"Record {record.record_id} already exists")

        if record.external_reference:
            key = (record.kind, record.external_reference)
            if key in self._references:
                raise DuplicateReferenceError(record.kind, record.external_reference)
            self._references[key] = record.record_id

        stored = copy.deepcopy(record)
        self._records[stored.record_id] = stored
        logger.debug(f"Created {stored.kind.value} record {stored.record_id}")
        return copy.deepcopy(stored)

    async def get_record(self, record_id: str) -> Optional[SettlementRecord]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def find_by_reference(
        self,
        reference: str,
        kind: Optional[SettlementKind] = None,
    ) -> List[SettlementRecord]:
        return [
            copy.deepcopy(r)
            for r in self._records.values()
            if r.external_reference == reference and (kind is None or r.kind == kind)
        ]

    async def find_heuristic_candidates(
        self,
        owner: str,
        statuses: Sequence[SettlementStatus],
        created_after: datetime,
        kind: Optional[SettlementKind] = None,
    ) -> List[SettlementRecord]:
        created_after = ensure_utc(created_after)
        return [
            copy.deepcopy(r)
            for r in self._records.values()
            if r.owner == owner
            and r.external_reference is None
            and r.status in statuses
            and ensure_utc(r.created_at) >= created_after
            and (kind is None or r.kind == kind)
        ]

    async def conditional_update(
        self,
        record_id: str,
        expected_version: int,
        update: RecordUpdate,
        expect_notified: Optional[bool] = None,
    ) -> bool:
        self.update_attempts += 1

        record = self._records.get(record_id)
        if record is None:
            return False

        if self.simulated_conflicts > 0:
            self.simulated_conflicts -= 1
            record.status_version += 1
            logger.debug(f"Injected write conflict on record {record_id}")

        if record.status_version != expected_version:
            return False
        if expect_notified is not None and record.notified != expect_notified:
            return False

        new_key = None
        if update.external_reference is not None and update.external_reference != record.external_reference:
            new_key = (record.kind, update.external_reference)
            holder = self._references.get(new_key)
            if holder is not None and holder != record_id:
                raise DuplicateReferenceError(record.kind, update.external_reference)

        # Version matched: write
        if new_key is not None:
            self._references[new_key] = record_id
            record.external_reference = update.external_reference
        if update.status is not None:
            record.status = update.status
        if update.failure_reason is not None:
            record.failure_reason = update.failure_reason
        if update.cancellation_reason is not None:
            record.cancellation_reason = update.cancellation_reason
        if update.notified is not None:
            record.notified = update.notified
        if update.append_seen_event is not None:
            record.seen_source_events = append_seen(
                record.seen_source_events, update.append_seen_event, update.max_seen
            )
        if update.increment_version:
            record.status_version += 1
        record.updated_at = utc_now()
        return True

    async def list_records(
        self,
        owner: Optional[str] = None,
        kind: Optional[SettlementKind] = None,
        status: Optional[SettlementStatus] = None,
        limit: int = 100,
    ) -> List[SettlementRecord]:
        records = [
            r for r in self._records.values()
            if (owner is None or r.owner == owner)
            and (kind is None or r.kind == kind)
            and (status is None or r.status == status)
        ]
        records.sort(key=lambda r: ensure_utc(r.created_at), reverse=True)
        return [copy.deepcopy(r) for r in records[:limit]]

    async def list_awaiting_confirmation(
        self,
        networks: Optional[Sequence[SettlementNetwork]] = None,
        limit: int = 100,
    ) -> List[SettlementRecord]:
        records = [
            r for r in self._records.values()
            if r.external_reference is not None
            and r.status not in TERMINAL_STATUSES
            and (networks is None or r.network in networks)
        ]
        records.sort(key=lambda r: ensure_utc(r.created_at))
        return [copy.deepcopy(r) for r in records[:limit]]

    # --------------------------------------------------------
    # UNMATCHED EVENTS
    # --------------------------------------------------------

    async def append_unmatched(self, entry: UnmatchedEventEntry) -> bool:
        if entry.source_event_id in self._unmatched_ids:
            return False
        stored = copy.deepcopy(entry)
        stored.entry_id = len(self._unmatched) + 1
        self._unmatched.append(stored)
        self._unmatched_ids[stored.source_event_id] = stored
        entry.entry_id = stored.entry_id
        return True

    async def get_unmatched_by_event_id(
        self, source_event_id: str
    ) -> Optional[UnmatchedEventEntry]:
        entry = self._unmatched_ids.get(source_event_id)
        return copy.deepcopy(entry) if entry else None

    async def list_unmatched(
        self,
        source: Optional[str] = None,
        limit: int = 100,
    ) -> List[UnmatchedEventEntry]:
        entries = [
            e for e in reversed(self._unmatched)
            if source is None or e.source == source
        ]
        return [copy.deepcopy(e) for e in entries[:limit]]
