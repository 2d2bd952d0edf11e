"""
Settlement Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the settlement reconciliation engine.

CRITICAL PRINCIPLE:
    "The engine only ever MUTATES existing settlement records."
    "Records are created outside the engine and never deleted."

============================================================
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal
import uuid


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================
# SETTLEMENT CLASSIFICATION
# ============================================================

class SettlementKind(Enum):
    """What the user asked for."""

    PURCHASE = "purchase"
    """Fiat or wallet purchase of metal tokens."""

    REDEMPTION = "redemption"
    """Redemption of tokens for physical delivery."""

    GIFT = "gift"
    """Token transfer to another user."""


class MetalAsset(Enum):
    """Tokenized metal."""

    GOLD = "gold"
    SILVER = "silver"


class SettlementNetwork(Enum):
    """Settlement rail the tokens live on."""

    EVM_PUBLIC = "evm-public"
    """Public EVM chain."""

    SECOND_CHAIN = "second-chain"
    """Second-chain ledger."""

    PRIVATE_LEDGER = "private-ledger"
    """Private permissioned ledger."""


# ============================================================
# SETTLEMENT LIFECYCLE STATES
# ============================================================

class SettlementStatus(Enum):
    """
    Settlement record status.

    State Machine:

        PENDING ──────────► PROCESSING
           │  │                 │  │
           │  └──► COMPLETED ◄──┘  │
           │                       │
           ├─────► FAILED ◄────────┘
           │
           └─────► CANCELLED  (redemption, user action only)

    Terminal: COMPLETED, FAILED, CANCELLED.
    """

    PENDING = "pending"
    """Created, nothing reported yet."""

    PROCESSING = "processing"
    """A source reported the settlement in flight."""

    COMPLETED = "completed"
    """Settled."""

    FAILED = "failed"
    """A source reported failure."""

    CANCELLED = "cancelled"
    """Cancelled by the user (redemptions only)."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SettlementStatus.COMPLETED,
    SettlementStatus.FAILED,
    SettlementStatus.CANCELLED,
})

ACTIVE_STATUSES = frozenset({
    SettlementStatus.PENDING,
    SettlementStatus.PROCESSING,
})


# ============================================================
# EVENT CLASSIFICATION
# ============================================================

class SourceKind(Enum):
    """Family of external source that produced an event."""

    FIAT_PROVIDER = "fiat-provider"
    """Fiat on/off-ramp webhook."""

    LEDGER_CONFIRMATION = "ledger-confirmation"
    """Ledger transaction confirmation feed."""


class CanonicalStatus(Enum):
    """Source-agnostic status vocabulary produced by the normalizer."""

    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================
# SETTLEMENT RECORD
# ============================================================

@dataclass
class SettlementRecord:
    """
    Durable settlement intent and its lifecycle status.

    Amounts are Decimal, never float.
    """

    owner: str
    """Requesting user."""

    kind: SettlementKind
    asset: MetalAsset
    network: SettlementNetwork

    quantity: Decimal
    """Token quantity."""

    monetary_value: Decimal
    """Value in fiat (USD)."""

    fee_value: Decimal = Decimal("0")
    """Platform fee in fiat (USD)."""

    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    """Immutable identifier."""

    external_reference: Optional[str] = None
    """Ledger tx hash or provider order id. Immutable once set."""

    status: SettlementStatus = SettlementStatus.PENDING
    status_version: int = 0
    """Incremented on every accepted transition."""

    notified: bool = False
    """Set once when the terminal side effect fired."""

    seen_source_events: List[str] = field(default_factory=list)
    """Recently applied source event ids, oldest first."""

    failure_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    wallet_address: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        """Whether the record reached a final status."""
        return self.status.is_terminal()

    def has_seen(self, source_event_id: str) -> bool:
        """Whether a source event was already applied to this record."""
        return source_event_id in self.seen_source_events

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "record_id": self.record_id,
            "owner": self.owner,
            "kind": self.kind.value,
            "asset": self.asset.value,
            "network": self.network.value,
            "quantity": str(self.quantity),
            "monetary_value": str(self.monetary_value),
            "fee_value": str(self.fee_value),
            "external_reference": self.external_reference,
            "status": self.status.value,
            "status_version": self.status_version,
            "notified": self.notified,
            "failure_reason": self.failure_reason,
            "cancellation_reason": self.cancellation_reason,
            "wallet_address": self.wallet_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ============================================================
# SETTLEMENT EVENT
# ============================================================

@dataclass
class SettlementEvent:
    """
    Canonical event produced by the normalizer.

    One instance per delivery; redeliveries carry the same
    source_event_id.
    """

    source_kind: SourceKind
    """Fiat provider or ledger confirmation."""

    source: str
    """Concrete source profile (e.g. "moonpay", "ledger")."""

    source_event_id: str
    """The source's own delivery id. Used for dedup."""

    reported_status: str
    """Native status string, as received."""

    canonical_status: CanonicalStatus
    """Mapped status."""

    candidate_reference: Optional[str] = None
    """Best available correlation key."""

    owner: Optional[str] = None
    """Heuristic matching only."""

    amount: Optional[Decimal] = None
    """Heuristic matching only."""

    kind: Optional[SettlementKind] = None
    """Kind hint, when the source implies one."""

    network: Optional[SettlementNetwork] = None
    block_or_slot: Optional[int] = None
    failure_reason: Optional[str] = None

    provider_reference: Optional[str] = None
    """Provider-side order or checkout id. Diagnostics only, never a correlation key."""

    received_at: datetime = field(default_factory=utc_now)
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source_kind": self.source_kind.value,
            "source": self.source,
            "source_event_id": self.source_event_id,
            "reported_status": self.reported_status,
            "canonical_status": self.canonical_status.value,
            "candidate_reference": self.candidate_reference,
            "owner": self.owner,
            "amount": str(self.amount) if self.amount is not None else None,
            "kind": self.kind.value if self.kind else None,
            "network": self.network.value if self.network else None,
            "block_or_slot": self.block_or_slot,
            "failure_reason": self.failure_reason,
            "provider_reference": self.provider_reference,
            "received_at": self.received_at.isoformat(),
        }


# ============================================================
# TRANSITION OUTCOME
# ============================================================

class OutcomeCode(Enum):
    """Result of applying an event to a record."""

    APPLIED = "APPLIED"
    """Status advanced."""

    NOOP_ALREADY_TERMINAL = "NOOP_ALREADY_TERMINAL"
    """Record already final; event acknowledged."""

    NOOP_DUPLICATE_SOURCE_EVENT = "NOOP_DUPLICATE_SOURCE_EVENT"
    """Same source event seen before."""

    REJECTED = "REJECTED"
    """Event refused; record untouched."""


class RejectionReason(Enum):
    """Why an event was refused."""

    INVALID_TRANSITION = "invalid transition"
    REFERENCE_MISMATCH = "reference mismatch"
    CONTENTION = "contention"
    NOT_CANCELLABLE = "not cancellable"
    NOT_OWNER = "not owner"


@dataclass
class TransitionOutcome:
    """Outcome of a single apply/cancel call."""

    code: OutcomeCode
    record_id: str

    new_status: Optional[SettlementStatus] = None
    """Set for APPLIED."""

    reason: Optional[RejectionReason] = None
    """Set for REJECTED."""

    status_version: Optional[int] = None
    """Version after the call."""

    message: str = ""

    @classmethod
    def applied(cls, record: SettlementRecord) -> "TransitionOutcome":
        return cls(
            code=OutcomeCode.APPLIED,
            record_id=record.record_id,
            new_status=record.status,
            status_version=record.status_version,
        )

    @classmethod
    def already_terminal(cls, record: SettlementRecord) -> "TransitionOutcome":
        return cls(
            code=OutcomeCode.NOOP_ALREADY_TERMINAL,
            record_id=record.record_id,
            status_version=record.status_version,
            message=f"Record already {record.status.value}",
        )

    @classmethod
    def duplicate(cls, record: SettlementRecord) -> "TransitionOutcome":
        return cls(
            code=OutcomeCode.NOOP_DUPLICATE_SOURCE_EVENT,
            record_id=record.record_id,
            status_version=record.status_version,
            message="Source event already processed",
        )

    @classmethod
    def rejected(
        cls,
        record: SettlementRecord,
        reason: RejectionReason,
        message: str = "",
    ) -> "TransitionOutcome":
        return cls(
            code=OutcomeCode.REJECTED,
            record_id=record.record_id,
            reason=reason,
            status_version=record.status_version,
            message=message or reason.value,
        )

    @property
    def is_applied(self) -> bool:
        """Whether the record was mutated."""
        return self.code == OutcomeCode.APPLIED

    @property
    def is_noop(self) -> bool:
        return self.code in {
            OutcomeCode.NOOP_ALREADY_TERMINAL,
            OutcomeCode.NOOP_DUPLICATE_SOURCE_EVENT,
        }


# ============================================================
# EXCEPTIONS
# ============================================================

class SettlementEngineError(Exception):
    """Base exception for the settlement engine."""

    code: str = "INT_UNEXPECTED_ERROR"


class NormalizationError(SettlementEngineError):
    """Raw payload could not be turned into a SettlementEvent."""

    code = "NRM_MALFORMED"

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class InvalidSignatureError(NormalizationError):
    """Payload authenticity check failed. Never mutate state."""

    code = "NRM_INVALID_SIGNATURE"


class MalformedPayloadError(NormalizationError):
    """Payload cannot be parsed into a candidate event."""

    code = "NRM_MALFORMED"


class UnknownSourceError(NormalizationError):
    """No source profile registered under this name."""

    code = "NRM_UNKNOWN_SOURCE"


class ReconciliationError(SettlementEngineError):
    """Event could not be reconciled."""

    code = "REC_UNRESOLVED_CORRELATION"


class UnresolvedCorrelationError(ReconciliationError):
    """No unique record found for an event."""

    code = "REC_UNRESOLVED_CORRELATION"


class StoreError(SettlementEngineError):
    """Persistence layer failure."""

    code = "STO_FAILURE"


class RecordNotFoundError(StoreError):
    """Settlement record does not exist."""

    code = "STO_RECORD_NOT_FOUND"

    def __init__(self, record_id: str):
        super().__init__(f"Settlement record {record_id} not found")
        self.record_id = record_id


class DuplicateReferenceError(StoreError):
    """(kind, external_reference) already held by another record."""

    code = "STO_DUPLICATE_REFERENCE"

    def __init__(self, kind: SettlementKind, reference: str):
        super().__init__(f"Reference {reference} already used by another {kind.value}")
        self.kind = kind
        self.reference = reference
