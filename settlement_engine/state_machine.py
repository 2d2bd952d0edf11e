"""
Settlement Engine - Status State Machine.

============================================================
PURPOSE
============================================================
Defines which (current status, event status) pairs advance a
settlement record and to where.

TRANSITION TABLE:

    current      event                  next
    ----------   --------------------   ----------
    pending      created | processing   processing
    pending      completed              completed
    pending      failed                 failed
    processing   completed              completed
    processing   failed                 failed

    pending ──(user cancel, redemption only)──► cancelled

INVARIANTS:
- Terminal states are final
- No entry requires a specific predecessor beyond
  non-terminality, so out-of-order delivery converges
- Cancellation is never triggered by a source event

============================================================
"""

import logging
from typing import Dict, Optional, Set, Tuple

from .types import (
    SettlementStatus,
    SettlementKind,
    CanonicalStatus,
    SettlementRecord,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

EVENT_TRANSITIONS: Dict[Tuple[SettlementStatus, CanonicalStatus], SettlementStatus] = {
    (SettlementStatus.PENDING, CanonicalStatus.CREATED): SettlementStatus.PROCESSING,
    (SettlementStatus.PENDING, CanonicalStatus.PROCESSING): SettlementStatus.PROCESSING,
    (SettlementStatus.PENDING, CanonicalStatus.COMPLETED): SettlementStatus.COMPLETED,
    (SettlementStatus.PENDING, CanonicalStatus.FAILED): SettlementStatus.FAILED,
    (SettlementStatus.PROCESSING, CanonicalStatus.COMPLETED): SettlementStatus.COMPLETED,
    (SettlementStatus.PROCESSING, CanonicalStatus.FAILED): SettlementStatus.FAILED,
}


# Every edge the store may ever see, event-driven or user-driven
VALID_TRANSITIONS: Dict[SettlementStatus, Set[SettlementStatus]] = {
    SettlementStatus.PENDING: {
        SettlementStatus.PROCESSING,
        SettlementStatus.COMPLETED,
        SettlementStatus.FAILED,
        SettlementStatus.CANCELLED,
    },
    SettlementStatus.PROCESSING: {
        SettlementStatus.COMPLETED,
        SettlementStatus.FAILED,
    },
    # Terminal states - no transitions out
    SettlementStatus.COMPLETED: set(),
    SettlementStatus.FAILED: set(),
    SettlementStatus.CANCELLED: set(),
}


CANCELLABLE_KINDS = frozenset({SettlementKind.REDEMPTION})


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for status transitions.

    Pure lookups; no I/O.
    """

    @staticmethod
    def target_for_event(
        current: SettlementStatus,
        event_status: CanonicalStatus,
    ) -> Optional[SettlementStatus]:
        """
        Target status for an event, or None when not permitted.

        Args:
            current: Current record status
            event_status: Canonical status reported by the event

        Returns:
            Next status or None
        """
        return EVENT_TRANSITIONS.get((current, event_status))

    @staticmethod
    def can_transition(
        from_status: SettlementStatus,
        to_status: SettlementStatus,
    ) -> Tuple[bool, str]:
        """
        Check if an edge exists at all.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_status.is_terminal():
            return False, f"Cannot transition from terminal state {from_status.value}"

        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def can_cancel(record: SettlementRecord) -> Tuple[bool, str]:
        """
        Check whether a user may cancel a record.

        Returns:
            Tuple of (allowed, reason)
        """
        if record.kind not in CANCELLABLE_KINDS:
            return False, f"Cannot cancel a {record.kind.value}"
        if record.status != SettlementStatus.PENDING:
            return False, f"Cannot cancel a {record.status.value} {record.kind.value}"
        return True, "Cancellable"
