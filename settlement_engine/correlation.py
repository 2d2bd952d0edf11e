"""
Settlement Engine - Correlation Resolver.

============================================================
PURPOSE
============================================================
Matches an inbound SettlementEvent to the one settlement
record it pertains to.

STEPS:
1. Exact: external_reference == candidate_reference
2. Heuristic (only when step 1 found nothing):
   - same owner
   - no external_reference yet
   - non-terminal status
   - monetary value within tolerance
   - created within the recent window

AMBIGUITY RULE:
    "Zero or several candidates resolve to nothing."
    The event goes to the unmatched ledger; it is never guessed.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .clock import ClockProtocol, SystemClock
from .config import CorrelationConfig
from .store.base import SettlementStore
from .types import ACTIVE_STATUSES, SettlementEvent


logger = logging.getLogger(__name__)


class CorrelationMethod(Enum):
    """How an event was matched."""

    EXACT = "exact"
    HEURISTIC = "heuristic"
    NONE = "none"


@dataclass
class CorrelationResult:
    """Resolver answer plus the evidence behind it."""

    record_id: Optional[str]
    method: CorrelationMethod
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def resolved(self) -> bool:
        return self.record_id is not None


class CorrelationResolver:
    """
    Resolves events to settlement records.

    Read-only; never mutates the store.
    """

    def __init__(
        self,
        store: SettlementStore,
        config: Optional[CorrelationConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize resolver.

        Args:
            store: Settlement store
            config: Heuristic tolerance and window
            clock: Time source for the window
        """
        self._store = store
        self._config = config or CorrelationConfig()
        self._clock = clock or SystemClock()

    async def resolve(self, event: SettlementEvent) -> CorrelationResult:
        """
        Resolve an event to a record id.

        Args:
            event: Normalized event

        Returns:
            CorrelationResult; record_id is None when unresolved
        """
        diagnostics: Dict[str, Any] = {
            "candidate_reference": event.candidate_reference,
            "kind_hint": event.kind.value if event.kind else None,
        }

        # Step 1: exact
        if event.candidate_reference:
            matches = await self._store.find_by_reference(event.candidate_reference, kind=event.kind)
            diagnostics["exact_matches"] = len(matches)

            if len(matches) == 1:
                return CorrelationResult(
                    record_id=matches[0].record_id,
                    method=CorrelationMethod.EXACT,
                    diagnostics=diagnostics,
                )
            if len(matches) > 1:
                diagnostics["reason"] = "reference held by several records"
                logger.warning(
                    f"Reference {event.candidate_reference} matches {len(matches)} records; "
                    f"not guessing"
                )
                return CorrelationResult(None, CorrelationMethod.NONE, diagnostics)
        else:
            diagnostics["exact_matches"] = 0
            diagnostics["exact_skipped"] = "no candidate reference"

        # Step 2: heuristic
        if not self._config.enable_heuristic:
            diagnostics["reason"] = "heuristic disabled"
            return CorrelationResult(None, CorrelationMethod.NONE, diagnostics)

        if not event.owner or event.amount is None:
            diagnostics["reason"] = "no owner/amount for heuristic match"
            return CorrelationResult(None, CorrelationMethod.NONE, diagnostics)

        created_after = self._clock.now() - timedelta(hours=self._config.window_hours)
        candidates = await self._store.find_heuristic_candidates(
            owner=event.owner,
            statuses=list(ACTIVE_STATUSES),
            created_after=created_after,
            kind=event.kind,
        )
        diagnostics["owner_candidates"] = len(candidates)

        tolerance = self._config.amount_tolerance
        within = [
            c for c in candidates
            if abs(c.monetary_value - event.amount) <= tolerance
        ]
        diagnostics["heuristic_matches"] = len(within)

        if len(within) == 1:
            logger.info(
                f"Heuristic match for {event.source_event_id}: record {within[0].record_id}"
            )
            return CorrelationResult(
                record_id=within[0].record_id,
                method=CorrelationMethod.HEURISTIC,
                diagnostics=diagnostics,
            )

        diagnostics["reason"] = (
            "no heuristic candidate" if not within else "ambiguous heuristic match"
        )
        return CorrelationResult(None, CorrelationMethod.NONE, diagnostics)
