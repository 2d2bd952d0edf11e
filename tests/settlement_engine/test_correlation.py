"""
Correlation Resolver Tests.

============================================================
PURPOSE
============================================================
Tests for matching events to settlement records.

TEST CATEGORIES:
- Exact reference matching
- Heuristic owner/amount matching
- Ambiguity never guessed

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from settlement_engine import (
    CanonicalStatus,
    CorrelationConfig,
    CorrelationMethod,
    CorrelationResolver,
    SettlementKind,
    SettlementStatus,
)


@pytest.fixture
def resolver(store, config, clock):
    return CorrelationResolver(store, config.correlation, clock)


# ============================================================
# EXACT MATCH TESTS
# ============================================================

class TestExactMatch:
    """Tests for reference-based correlation."""

    @pytest.mark.asyncio
    async def test_reference_match(self, resolver, make_record, make_event):
        record = await make_record(external_reference="0xaaa", status=SettlementStatus.PROCESSING)
        await make_record(owner="user-2")

        result = await resolver.resolve(make_event(CanonicalStatus.COMPLETED, reference="0xaaa"))

        assert result.resolved
        assert result.record_id == record.record_id
        assert result.method == CorrelationMethod.EXACT

    @pytest.mark.asyncio
    async def test_exact_match_wins_over_heuristic(self, resolver, make_record, make_event):
        """An exact hit is authoritative even if another record fits the heuristic."""
        referenced = await make_record(owner="user-9", external_reference="0xbbb")
        await make_record(owner="user-1")

        result = await resolver.resolve(make_event(reference="0xbbb", owner="user-1"))

        assert result.record_id == referenced.record_id

    @pytest.mark.asyncio
    async def test_same_reference_across_kinds_is_ambiguous(self, resolver, make_record, make_event):
        await make_record(kind=SettlementKind.PURCHASE, external_reference="0xccc")
        await make_record(kind=SettlementKind.GIFT, external_reference="0xccc")

        result = await resolver.resolve(make_event(reference="0xccc", owner=None))

        assert not result.resolved
        assert result.diagnostics["exact_matches"] == 2

    @pytest.mark.asyncio
    async def test_kind_hint_disambiguates(self, resolver, make_record, make_event):
        await make_record(kind=SettlementKind.PURCHASE, external_reference="0xccc")
        gift = await make_record(kind=SettlementKind.GIFT, external_reference="0xccc")

        result = await resolver.resolve(
            make_event(reference="0xccc", owner=None, kind=SettlementKind.GIFT)
        )

        assert result.record_id == gift.record_id


# ============================================================
# HEURISTIC MATCH TESTS
# ============================================================

class TestHeuristicMatch:
    """Tests for owner/amount fallback."""

    @pytest.mark.asyncio
    async def test_single_candidate_matches(self, resolver, make_record, make_event):
        record = await make_record()

        result = await resolver.resolve(make_event(CanonicalStatus.CREATED))

        assert result.record_id == record.record_id
        assert result.method == CorrelationMethod.HEURISTIC

    @pytest.mark.asyncio
    async def test_unmatched_reference_falls_back(self, resolver, make_record, make_event):
        """Event before reference: the new reference is unknown, heuristic finds the record."""
        record = await make_record(status=SettlementStatus.PROCESSING)

        result = await resolver.resolve(make_event(CanonicalStatus.COMPLETED, reference="tx123"))

        assert result.record_id == record.record_id
        assert result.diagnostics["exact_matches"] == 0

    @pytest.mark.asyncio
    async def test_amount_within_tolerance(self, resolver, make_record, make_event):
        record = await make_record(monetary_value=Decimal("100.00"))

        result = await resolver.resolve(make_event(amount=Decimal("100.01")))

        assert result.record_id == record.record_id

    @pytest.mark.asyncio
    async def test_amount_outside_tolerance(self, resolver, make_record, make_event):
        await make_record(monetary_value=Decimal("100.00"))

        result = await resolver.resolve(make_event(amount=Decimal("100.02")))

        assert not result.resolved
        assert result.diagnostics["reason"] == "no heuristic candidate"

    @pytest.mark.asyncio
    async def test_two_candidates_is_ambiguous(self, resolver, make_record, make_event):
        """Ambiguity is never resolved by guessing."""
        await make_record()
        await make_record()

        result = await resolver.resolve(make_event())

        assert not result.resolved
        assert result.diagnostics["heuristic_matches"] == 2
        assert result.diagnostics["reason"] == "ambiguous heuristic match"

    @pytest.mark.asyncio
    async def test_other_owner_not_matched(self, resolver, make_record, make_event):
        await make_record(owner="user-2")

        result = await resolver.resolve(make_event(owner="user-1"))

        assert not result.resolved

    @pytest.mark.asyncio
    async def test_records_with_reference_excluded(self, resolver, make_record, make_event):
        await make_record(external_reference="0xddd")

        result = await resolver.resolve(make_event(reference=None))

        assert not result.resolved

    @pytest.mark.asyncio
    async def test_terminal_records_excluded(self, resolver, make_record, make_event):
        await make_record(status=SettlementStatus.FAILED)

        result = await resolver.resolve(make_event())

        assert not result.resolved

    @pytest.mark.asyncio
    async def test_old_records_outside_window(self, resolver, make_record, make_event, clock):
        await make_record(created_at=clock.now() - timedelta(hours=25))

        result = await resolver.resolve(make_event())

        assert not result.resolved

    @pytest.mark.asyncio
    async def test_missing_owner_skips_heuristic(self, resolver, make_record, make_event):
        await make_record()

        result = await resolver.resolve(make_event(owner=None))

        assert not result.resolved
        assert "owner" in result.diagnostics["reason"]

    @pytest.mark.asyncio
    async def test_heuristic_can_be_disabled(self, store, clock, make_record, make_event):
        resolver = CorrelationResolver(store, CorrelationConfig(enable_heuristic=False), clock)
        await make_record()

        result = await resolver.resolve(make_event())

        assert not result.resolved
        assert result.diagnostics["reason"] == "heuristic disabled"
