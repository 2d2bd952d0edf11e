"""
Settlement Engine Package.

============================================================
PURPOSE
============================================================
Reconciles tokenized-metal purchases, redemptions and gifts
against asynchronous, duplicated and out-of-order events from
fiat providers and ledgers.

CRITICAL PRINCIPLE:
    "The engine only ever MUTATES existing settlement records."
    "Every mutation is a conditional write on status_version."

AUTHORITY BOUNDARIES:
    CAN:
        - Advance record status from source events
        - Attach the external reference once
        - Cancel pending redemptions on owner request
        - Fire the terminal side effect once

    MUST NOT:
        - Create records from source events
        - Overwrite an external reference
        - Guess between ambiguous candidates
        - Schedule its own retries

============================================================
MODULES
============================================================
- types: Records, events, outcomes, exceptions
- config: Engine configuration
- errors: Error taxonomy and acknowledgments
- clock: Injectable UTC clock
- state_machine: Status transition table
- signatures: Webhook signature, token and bearer checks
- normalizer: Source payloads to canonical events
- correlation: Event to record matching
- engine: Optimistic-concurrency transitions
- dispatcher: At-most-once terminal side effects
- unmatched: Unmatched-event ledger
- reconciler: End-to-end delivery handling
- confirmations: Ledger confirmation poller
- store: Memory and SQLAlchemy stores
- api: FastAPI surface

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    SettlementKind,
    MetalAsset,
    SettlementNetwork,
    SettlementStatus,
    SourceKind,
    CanonicalStatus,
    OutcomeCode,
    RejectionReason,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
    # Dataclasses
    SettlementRecord,
    SettlementEvent,
    TransitionOutcome,
    # Exceptions
    SettlementEngineError,
    NormalizationError,
    InvalidSignatureError,
    MalformedPayloadError,
    UnknownSourceError,
    ReconciliationError,
    UnresolvedCorrelationError,
    StoreError,
    RecordNotFoundError,
    DuplicateReferenceError,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    SignatureConfig,
    CorrelationConfig,
    ConcurrencyConfig,
    DedupConfig,
    NotificationConfig,
    DatabaseConfig,
    LedgerPollingConfig,
    SettlementEngineConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    Acknowledgment,
    acknowledgment_for,
    error_code_for_outcome,
)

# ============================================================
# COMPONENTS
# ============================================================
from .clock import ClockProtocol, SystemClock, MockClock
from .state_machine import TransitionGuard, EVENT_TRANSITIONS, VALID_TRANSITIONS
from .signatures import (
    sign_payload,
    verify_signature,
    parse_signature_header,
    decode_signed_token,
    verify_bearer_token,
)
from .normalizer import AuthScheme, EventNormalizer, SourceProfile, default_profiles
from .correlation import CorrelationResolver, CorrelationResult, CorrelationMethod
from .engine import ReconciliationEngine
from .dispatcher import (
    SideEffectDispatcher,
    DispatchResult,
    SettlementNotifier,
    SettlementNotice,
    LogNotifier,
    TelegramNotifier,
)
from .unmatched import UnmatchedEventLedger
from .reconciler import SettlementReconciler, ReconciliationReport
from .confirmations import (
    LedgerConfirmationPoller,
    LedgerStatusClient,
    LedgerTransactionStatus,
    LedgerClientError,
    PollResult,
    load_ledger_client,
)
from .store import (
    SettlementStore,
    RecordUpdate,
    UnmatchedEventEntry,
    InMemorySettlementStore,
    SqlAlchemySettlementStore,
    create_store,
)


__all__ = [
    # Types
    "SettlementKind",
    "MetalAsset",
    "SettlementNetwork",
    "SettlementStatus",
    "SourceKind",
    "CanonicalStatus",
    "OutcomeCode",
    "RejectionReason",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "SettlementRecord",
    "SettlementEvent",
    "TransitionOutcome",
    "SettlementEngineError",
    "NormalizationError",
    "InvalidSignatureError",
    "MalformedPayloadError",
    "UnknownSourceError",
    "ReconciliationError",
    "UnresolvedCorrelationError",
    "StoreError",
    "RecordNotFoundError",
    "DuplicateReferenceError",
    # Config
    "SignatureConfig",
    "CorrelationConfig",
    "ConcurrencyConfig",
    "DedupConfig",
    "NotificationConfig",
    "DatabaseConfig",
    "LedgerPollingConfig",
    "SettlementEngineConfig",
    # Errors
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "Acknowledgment",
    "acknowledgment_for",
    "error_code_for_outcome",
    # Components
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "TransitionGuard",
    "EVENT_TRANSITIONS",
    "VALID_TRANSITIONS",
    "sign_payload",
    "verify_signature",
    "parse_signature_header",
    "decode_signed_token",
    "verify_bearer_token",
    "AuthScheme",
    "EventNormalizer",
    "SourceProfile",
    "default_profiles",
    "CorrelationResolver",
    "CorrelationResult",
    "CorrelationMethod",
    "ReconciliationEngine",
    "SideEffectDispatcher",
    "DispatchResult",
    "SettlementNotifier",
    "SettlementNotice",
    "LogNotifier",
    "TelegramNotifier",
    "UnmatchedEventLedger",
    "SettlementReconciler",
    "ReconciliationReport",
    "LedgerConfirmationPoller",
    "LedgerStatusClient",
    "LedgerTransactionStatus",
    "LedgerClientError",
    "PollResult",
    "load_ledger_client",
    "SettlementStore",
    "RecordUpdate",
    "UnmatchedEventEntry",
    "InMemorySettlementStore",
    "SqlAlchemySettlementStore",
    "create_store",
]

__version__ = "1.0.0"
