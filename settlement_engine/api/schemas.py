"""
Pydantic Schemas for the Settlement API.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..store.base import UnmatchedEventEntry
from ..types import (
    MetalAsset,
    SettlementKind,
    SettlementNetwork,
    SettlementRecord,
    TransitionOutcome,
)


# =============================================================
# SETTLEMENT RECORDS
# =============================================================

class SettlementCreate(BaseModel):
    """Request to open a settlement record."""
    owner: str = Field(..., min_length=1)
    kind: SettlementKind
    asset: MetalAsset
    network: SettlementNetwork
    quantity: Decimal = Field(..., gt=0)
    monetary_value: Decimal = Field(..., ge=0)
    fee_value: Decimal = Field(Decimal("0"), ge=0)
    wallet_address: Optional[str] = None
    kyc_approved: bool = False


class SettlementResponse(BaseModel):
    record_id: str
    owner: str
    kind: str
    asset: str
    network: str
    quantity: str
    monetary_value: str
    fee_value: str
    external_reference: Optional[str] = None
    status: str
    status_version: int
    notified: bool
    failure_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    wallet_address: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: SettlementRecord) -> "SettlementResponse":
        return cls(**record.to_dict())


class SettlementListResponse(BaseModel):
    records: List[SettlementResponse]
    count: int


class CancelRequest(BaseModel):
    """Owner-initiated redemption cancel."""
    owner: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)


class TransitionResponse(BaseModel):
    record_id: str
    outcome: str
    status: Optional[str] = None
    status_version: Optional[int] = None
    message: str = ""

    @classmethod
    def from_outcome(cls, outcome: TransitionOutcome) -> "TransitionResponse":
        return cls(
            record_id=outcome.record_id,
            outcome=outcome.code.value,
            status=outcome.new_status.value if outcome.new_status else None,
            status_version=outcome.status_version,
            message=outcome.message,
        )


# =============================================================
# LEDGER CONFIRMATIONS
# =============================================================

class LedgerConfirmation(BaseModel):
    """One (status, block_or_slot) answer for a watched hash."""
    transaction_hash: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    network: SettlementNetwork
    block_or_slot: Optional[int] = Field(None, ge=0)
    kind: Optional[SettlementKind] = None


# =============================================================
# UNMATCHED EVENTS
# =============================================================

class UnmatchedEventResponse(BaseModel):
    entry_id: Optional[int] = None
    source: str
    source_event_id: str
    reported_status: str
    canonical_status: str
    candidate_reference: Optional[str] = None
    owner: Optional[str] = None
    amount: Optional[str] = None
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: str

    @classmethod
    def from_entry(cls, entry: UnmatchedEventEntry) -> "UnmatchedEventResponse":
        return cls(**entry.to_dict())


class UnmatchedListResponse(BaseModel):
    entries: List[UnmatchedEventResponse]
    count: int


# =============================================================
# HEALTH
# =============================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str = "1.0.0"
    store_ok: bool = True
