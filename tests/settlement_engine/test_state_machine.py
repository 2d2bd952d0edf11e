"""
Status State Machine Tests.

============================================================
PURPOSE
============================================================
Tests for the settlement transition table and guard.

TEST CATEGORIES:
- Event transitions: permitted (current, event) pairs
- Terminal finality: nothing leaves a terminal state
- Cancellation: redemption-only, pending-only

============================================================
"""

from decimal import Decimal
from itertools import product

import pytest

from settlement_engine import (
    CanonicalStatus,
    EVENT_TRANSITIONS,
    MetalAsset,
    SettlementKind,
    SettlementNetwork,
    SettlementRecord,
    SettlementStatus,
    TERMINAL_STATUSES,
    TransitionGuard,
)


def _record(kind=SettlementKind.REDEMPTION, status=SettlementStatus.PENDING):
    return SettlementRecord(
        owner="user-1",
        kind=kind,
        asset=MetalAsset.SILVER,
        network=SettlementNetwork.PRIVATE_LEDGER,
        quantity=Decimal("10"),
        monetary_value=Decimal("250"),
        status=status,
    )


# ============================================================
# EVENT TRANSITION TESTS
# ============================================================

class TestEventTransitions:
    """Tests for TransitionGuard.target_for_event."""

    @pytest.mark.parametrize("event_status", [CanonicalStatus.CREATED, CanonicalStatus.PROCESSING])
    def test_pending_to_processing(self, event_status):
        """Created and processing events move pending to processing."""
        target = TransitionGuard.target_for_event(SettlementStatus.PENDING, event_status)
        assert target == SettlementStatus.PROCESSING

    def test_pending_direct_completion(self):
        """Sources may skip the intermediate state."""
        target = TransitionGuard.target_for_event(SettlementStatus.PENDING, CanonicalStatus.COMPLETED)
        assert target == SettlementStatus.COMPLETED

    @pytest.mark.parametrize("current", [SettlementStatus.PENDING, SettlementStatus.PROCESSING])
    def test_failure_from_active_states(self, current):
        """Failed events fail any active record."""
        assert TransitionGuard.target_for_event(current, CanonicalStatus.FAILED) == SettlementStatus.FAILED

    def test_processing_to_completed(self):
        target = TransitionGuard.target_for_event(SettlementStatus.PROCESSING, CanonicalStatus.COMPLETED)
        assert target == SettlementStatus.COMPLETED

    @pytest.mark.parametrize("event_status", [CanonicalStatus.CREATED, CanonicalStatus.PROCESSING])
    def test_processing_does_not_repeat(self, event_status):
        """Same-state events are not transitions."""
        assert TransitionGuard.target_for_event(SettlementStatus.PROCESSING, event_status) is None

    def test_no_event_targets_cancelled(self):
        """Cancellation never comes from a source event."""
        assert SettlementStatus.CANCELLED not in EVENT_TRANSITIONS.values()

    def test_table_has_exactly_six_entries(self):
        assert len(EVENT_TRANSITIONS) == 6


# ============================================================
# TERMINAL FINALITY TESTS
# ============================================================

class TestTerminalFinality:
    """Tests that terminal states are final."""

    @pytest.mark.parametrize(
        "current,event_status",
        list(product(sorted(TERMINAL_STATUSES, key=lambda s: s.value), list(CanonicalStatus))),
    )
    def test_terminal_has_no_event_transitions(self, current, event_status):
        assert TransitionGuard.target_for_event(current, event_status) is None

    @pytest.mark.parametrize("current", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_can_transition_from_terminal_refused(self, current):
        allowed, reason = TransitionGuard.can_transition(current, SettlementStatus.PROCESSING)
        assert allowed is False
        assert "terminal" in reason

    def test_completed_to_processing_invalid(self):
        """A settled record never goes back in flight."""
        allowed, _ = TransitionGuard.can_transition(
            SettlementStatus.COMPLETED, SettlementStatus.PROCESSING
        )
        assert allowed is False

    def test_processing_to_cancelled_invalid(self):
        allowed, reason = TransitionGuard.can_transition(
            SettlementStatus.PROCESSING, SettlementStatus.CANCELLED
        )
        assert allowed is False
        assert "Invalid transition" in reason


# ============================================================
# CANCELLATION TESTS
# ============================================================

class TestCancellation:
    """Tests for TransitionGuard.can_cancel."""

    def test_pending_redemption_cancellable(self):
        allowed, _ = TransitionGuard.can_cancel(_record())
        assert allowed is True

    @pytest.mark.parametrize("kind", [SettlementKind.PURCHASE, SettlementKind.GIFT])
    def test_other_kinds_not_cancellable(self, kind):
        allowed, reason = TransitionGuard.can_cancel(_record(kind=kind))
        assert allowed is False
        assert kind.value in reason

    @pytest.mark.parametrize(
        "status",
        [SettlementStatus.PROCESSING, SettlementStatus.COMPLETED, SettlementStatus.CANCELLED],
    )
    def test_non_pending_redemption_not_cancellable(self, status):
        allowed, _ = TransitionGuard.can_cancel(_record(status=status))
        assert allowed is False
