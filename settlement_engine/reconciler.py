"""
Settlement Engine - Reconciler.

============================================================
PURPOSE
============================================================
End-to-end handling of one inbound delivery.

FLOW:
    raw payload
        -> EventNormalizer.normalize
        -> CorrelationResolver.resolve
             unresolved -> UnmatchedEventLedger.record
        -> ReconciliationEngine.apply
             applied + terminal -> SideEffectDispatcher.dispatch
        -> Acknowledgment for the source

PROPAGATION POLICY:
- Every error kind is handled here and turned into an
  acknowledgment; nothing reaches the source as a crash
- Only authentication failures are refused

============================================================
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .clock import ClockProtocol, SystemClock
from .config import SettlementEngineConfig
from .correlation import CorrelationResolver, CorrelationResult
from .dispatcher import DispatchResult, MintHook, SettlementNotifier, SideEffectDispatcher
from .engine import ReconciliationEngine
from .errors import Acknowledgment, acknowledgment_for, error_code_for_outcome, log_level_for
from .normalizer import EventNormalizer, RawPayload
from .store.base import SettlementStore, UnmatchedEventEntry
from .types import (
    NormalizationError,
    RecordNotFoundError,
    SettlementEvent,
    StoreError,
    TransitionOutcome,
    UnresolvedCorrelationError,
)
from .unmatched import UnmatchedEventLedger


logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Everything that happened to one delivery."""

    acknowledgment: Acknowledgment
    event: Optional[SettlementEvent] = None
    correlation: Optional[CorrelationResult] = None
    outcome: Optional[TransitionOutcome] = None
    dispatch: Optional[DispatchResult] = None
    unmatched_entry: Optional[UnmatchedEventEntry] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        result: Dict[str, Any] = {
            "status_code": self.acknowledgment.status_code,
            "error_code": self.error_code,
        }
        if self.event is not None:
            result["source_event_id"] = self.event.source_event_id
        if self.correlation is not None:
            result["correlation"] = self.correlation.method.value
        if self.outcome is not None:
            result["outcome"] = self.outcome.code.value
            result["record_id"] = self.outcome.record_id
        if self.dispatch is not None:
            result["notified"] = self.dispatch.fired
        return result


class SettlementReconciler:
    """
    Pipeline from raw delivery to acknowledgment.
    """

    def __init__(
        self,
        normalizer: EventNormalizer,
        resolver: CorrelationResolver,
        engine: ReconciliationEngine,
        dispatcher: SideEffectDispatcher,
        ledger: UnmatchedEventLedger,
    ):
        self._normalizer = normalizer
        self._resolver = resolver
        self._engine = engine
        self._dispatcher = dispatcher
        self._ledger = ledger

    @classmethod
    def build(
        cls,
        store: SettlementStore,
        config: Optional[SettlementEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        notifiers: Optional[List[SettlementNotifier]] = None,
        mint_hook: Optional[MintHook] = None,
    ) -> "SettlementReconciler":
        """
        Wire every component against one store.

        Args:
            store: Settlement store
            config: Engine configuration
            clock: Shared time source
            notifiers: Overrides the configured notifiers
            mint_hook: Mint-confirmation hook
        """
        config = config or SettlementEngineConfig()
        clock = clock or SystemClock()

        if notifiers is None:
            dispatcher = SideEffectDispatcher.from_config(store, config.notification, mint_hook)
        else:
            dispatcher = SideEffectDispatcher(
                store, notifiers=notifiers, mint_hook=mint_hook, config=config.notification
            )

        return cls(
            normalizer=EventNormalizer(config.signature, clock=clock),
            resolver=CorrelationResolver(store, config.correlation, clock),
            engine=ReconciliationEngine(store, config, clock),
            dispatcher=dispatcher,
            ledger=UnmatchedEventLedger(store, clock),
        )

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def dispatcher(self) -> SideEffectDispatcher:
        return self._dispatcher

    @property
    def ledger(self) -> UnmatchedEventLedger:
        return self._ledger

    @property
    def normalizer(self) -> EventNormalizer:
        return self._normalizer

    # --------------------------------------------------------
    # HANDLING
    # --------------------------------------------------------

    async def handle(
        self,
        source: str,
        raw_body: RawPayload,
        signature_header: Optional[str] = None,
    ) -> ReconciliationReport:
        """
        Handle one inbound delivery.

        Args:
            source: Source profile name
            raw_body: Raw request body (or decoded ledger payload)
            signature_header: Signature header value

        Returns:
            ReconciliationReport carrying the acknowledgment
        """
        try:
            event = self._normalizer.normalize(source, raw_body, signature_header)
        except NormalizationError as e:
            logger.log(log_level_for(e.code), f"Rejected {source} delivery [{e.code}]: {e}")
            return ReconciliationReport(
                acknowledgment=acknowledgment_for(e.code, detail=str(e)),
                error_code=e.code,
            )

        return await self.process_event(event)

    async def process_event(self, event: SettlementEvent) -> ReconciliationReport:
        """
        Correlate and apply an already-normalized event.
        """
        report = ReconciliationReport(
            acknowledgment=acknowledgment_for(None), event=event
        )

        try:
            report.correlation = await self._resolver.resolve(event)

            if not report.correlation.resolved:
                code = UnresolvedCorrelationError.code
                report.unmatched_entry = await self._ledger.record(
                    event, report.correlation.diagnostics
                )
                report.error_code = code
                report.acknowledgment = acknowledgment_for(code, outcome="UNMATCHED")
                return report

            outcome = await self._engine.apply(report.correlation.record_id, event)
            report.outcome = outcome

            if outcome.is_applied and outcome.new_status.is_terminal():
                report.dispatch = await self._dispatcher.dispatch(outcome.record_id)

        except RecordNotFoundError as e:
            logger.error(f"Resolved record vanished for {event.source_event_id}: {e}")
            report.error_code = e.code
            report.acknowledgment = acknowledgment_for(e.code, detail=str(e))
            return report
        except StoreError as e:
            logger.error(f"Settlement store failure on {event.source_event_id}: {e}")
            report.error_code = e.code
            report.acknowledgment = acknowledgment_for(e.code, detail="store unavailable")
            return report

        report.error_code = error_code_for_outcome(outcome)
        if report.error_code is not None:
            logger.log(
                log_level_for(report.error_code),
                f"{event.source} event {event.source_event_id} rejected "
                f"[{report.error_code}]: {outcome.message}",
            )
        report.acknowledgment = acknowledgment_for(
            report.error_code,
            outcome=outcome.code.value,
            detail=outcome.message or None,
        )
        return report
