"""
Settlement Engine - Store Interface.

============================================================
PURPOSE
============================================================
Abstract interface for settlement record persistence.

DESIGN PRINCIPLES:
- Store-agnostic engine logic
- One conditional-write primitive for every mutation
- Fully testable with the in-memory store

CONDITIONAL WRITE:
    UPDATE ... WHERE record_id = :id
                 AND status_version = :expected
    succeeds iff exactly one row matched.

    Only the fields named in RecordUpdate are written, so
    concurrent writers of unrelated fields never clobber
    each other.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..types import (
    SettlementKind,
    SettlementNetwork,
    SettlementRecord,
    SettlementStatus,
    SettlementEvent,
    utc_now,
)


logger = logging.getLogger(__name__)


# ============================================================
# RECORD UPDATE
# ============================================================

@dataclass
class RecordUpdate:
    """
    Fields to write in one conditional update.

    None means "leave unchanged".
    """

    status: Optional[SettlementStatus] = None
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None

    append_seen_event: Optional[str] = None
    """Source event id to append to the seen list."""

    max_seen: int = 64
    """Seen list bound; oldest entries rotate out."""

    increment_version: bool = True
    """Whether the write bumps status_version."""

    notified: Optional[bool] = None


def append_seen(seen: Sequence[str], event_id: Optional[str], max_seen: int) -> List[str]:
    """
    New seen list with event_id appended and the oldest rotated out.

    Args:
        seen: Current seen list, oldest first
        event_id: Event id to add
        max_seen: Bound

    Returns:
        New list
    """
    result = list(seen)
    if event_id is None or event_id in result:
        return result
    result.append(event_id)
    if max_seen > 0 and len(result) > max_seen:
        result = result[-max_seen:]
    return result


# ============================================================
# UNMATCHED EVENT ENTRY
# ============================================================

@dataclass
class UnmatchedEventEntry:
    """An event that correlated to no unique record."""

    source: str
    source_event_id: str
    reported_status: str
    canonical_status: str

    candidate_reference: Optional[str] = None
    owner: Optional[str] = None
    amount: Optional[str] = None

    diagnostics: Dict[str, Any] = field(default_factory=dict)
    """Why correlation failed (candidate counts, method tried)."""

    raw_payload: Dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=utc_now)
    entry_id: Optional[int] = None

    @classmethod
    def from_event(
        cls,
        event: SettlementEvent,
        diagnostics: Optional[Dict[str, Any]] = None,
        recorded_at: Optional[datetime] = None,
    ) -> "UnmatchedEventEntry":
        diagnostics = dict(diagnostics or {})
        if event.provider_reference:
            diagnostics.setdefault("provider_reference", event.provider_reference)
        return cls(
            source=event.source,
            source_event_id=event.source_event_id,
            reported_status=event.reported_status,
            canonical_status=event.canonical_status.value,
            candidate_reference=event.candidate_reference,
            owner=event.owner,
            amount=str(event.amount) if event.amount is not None else None,
            diagnostics=diagnostics,
            raw_payload=_json_safe(event.raw_payload),
            recorded_at=recorded_at or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "entry_id": self.entry_id,
            "source": self.source,
            "source_event_id": self.source_event_id,
            "reported_status": self.reported_status,
            "canonical_status": self.canonical_status,
            "candidate_reference": self.candidate_reference,
            "owner": self.owner,
            "amount": self.amount,
            "diagnostics": self.diagnostics,
            "recorded_at": self.recorded_at.isoformat(),
        }


def _json_safe(value: Any) -> Any:
    """Payload copy with Decimals turned into strings."""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


# ============================================================
# SETTLEMENT STORE
# ============================================================

class SettlementStore(ABC):
    """
    Abstract settlement store.

    All implementations must:
    1. Enforce (kind, external_reference) uniqueness
    2. Make conditional_update atomic
    3. Never delete records
    """

    # --------------------------------------------------------
    # RECORDS
    # --------------------------------------------------------

    @abstractmethod
    async def create_record(self, record: SettlementRecord) -> SettlementRecord:
        """
        Persist a new record.

        Raises:
            DuplicateReferenceError: reference already held
        """
        pass

    @abstractmethod
    async def get_record(self, record_id: str) -> Optional[SettlementRecord]:
        """Get a record by id, or None."""
        pass

    @abstractmethod
    async def find_by_reference(
        self,
        reference: str,
        kind: Optional[SettlementKind] = None,
    ) -> List[SettlementRecord]:
        """All records holding an external reference."""
        pass

    @abstractmethod
    async def find_heuristic_candidates(
        self,
        owner: str,
        statuses: Sequence[SettlementStatus],
        created_after: datetime,
        kind: Optional[SettlementKind] = None,
    ) -> List[SettlementRecord]:
        """
        Records of an owner with no external reference yet.

        Args:
            owner: Record owner
            statuses: Allowed statuses
            created_after: Window start
            kind: Optional kind filter
        """
        pass

    @abstractmethod
    async def conditional_update(
        self,
        record_id: str,
        expected_version: int,
        update: RecordUpdate,
        expect_notified: Optional[bool] = None,
    ) -> bool:
        """
        Apply update iff status_version still equals expected_version.

        Args:
            record_id: Record to update
            expected_version: Version read by the caller
            update: Fields to write
            expect_notified: Additional guard on the notified flag

        Returns:
            True if exactly one row was written

        Raises:
            DuplicateReferenceError: reference already held by another record
        """
        pass

    @abstractmethod
    async def list_records(
        self,
        owner: Optional[str] = None,
        kind: Optional[SettlementKind] = None,
        status: Optional[SettlementStatus] = None,
        limit: int = 100,
    ) -> List[SettlementRecord]:
        """Records, newest first."""
        pass

    @abstractmethod
    async def list_awaiting_confirmation(
        self,
        networks: Optional[Sequence[SettlementNetwork]] = None,
        limit: int = 100,
    ) -> List[SettlementRecord]:
        """Non-terminal records with a reference, oldest first."""
        pass

    # --------------------------------------------------------
    # UNMATCHED EVENTS
    # --------------------------------------------------------

    @abstractmethod
    async def append_unmatched(self, entry: UnmatchedEventEntry) -> bool:
        """
        Append an unmatched entry.

        Returns:
            False if the source event id was already recorded
        """
        pass

    @abstractmethod
    async def get_unmatched_by_event_id(
        self, source_event_id: str
    ) -> Optional[UnmatchedEventEntry]:
        pass

    @abstractmethod
    async def list_unmatched(
        self,
        source: Optional[str] = None,
        limit: int = 100,
    ) -> List[UnmatchedEventEntry]:
        """Unmatched entries, newest first."""
        pass

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the store."""
        pass

    async def close(self) -> None:
        """Release resources."""
        pass

    async def health_check(self) -> bool:
        """Whether the store is reachable."""
        return True
