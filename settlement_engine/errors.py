"""
Settlement Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of every way an inbound event can fail to
advance a settlement record, and what the source is told.

ERROR CATEGORIES:
1. Normalization - payload rejected before correlation
2. Correlation - no unique record for the event
3. Transition - record refused the event
4. Store - persistence failures

ACKNOWLEDGMENT POLICY:
- Authentication failures are rejected to the source
- Everything else is acknowledged so the source stops
  retrying; operators see it in logs or the unmatched ledger

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Set

from .types import TransitionOutcome, OutcomeCode, RejectionReason


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    AUTHENTICATION = "AUTHENTICATION"
    """Signature verification failed."""

    NORMALIZATION = "NORMALIZATION"
    """Payload could not be parsed."""

    CORRELATION = "CORRELATION"
    """No unique record for the event."""

    TRANSITION = "TRANSITION"
    """Record refused the event."""

    CONCURRENCY = "CONCURRENCY"
    """Lost the conditional-write race too many times."""

    STORE = "STORE"
    """Persistence failure."""

    INTERNAL = "INTERNAL"
    """Unexpected internal error."""


class ErrorSeverity(Enum):
    """Error severity levels."""

    INFO = "INFO"
    """Expected, informational."""

    WARNING = "WARNING"
    """Operator-visible, no action required."""

    ERROR = "ERROR"
    """Requires manual review."""

    CRITICAL = "CRITICAL"
    """Integrity at risk."""

    @property
    def log_level(self) -> int:
        return {
            ErrorSeverity.INFO: logging.INFO,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.CRITICAL: logging.CRITICAL,
        }[self]


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    severity: ErrorSeverity

    is_transient: bool
    """Whether source redelivery may succeed."""

    description: str
    recommended_action: str

    ack_status: int = 200
    """HTTP status returned to the source."""

    requires_review: bool = False
    """Whether an operator must look at it."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== NORMALIZATION ==========
    "NRM_INVALID_SIGNATURE": ErrorCodeInfo(
        code="NRM_INVALID_SIGNATURE",
        category=ErrorCategory.AUTHENTICATION,
        severity=ErrorSeverity.WARNING,
        is_transient=False,
        description="Webhook signature missing, invalid or outside the validity window",
        recommended_action="Check webhook secret and source clock",
        ack_status=401,
    ),
    "NRM_MALFORMED": ErrorCodeInfo(
        code="NRM_MALFORMED",
        category=ErrorCategory.NORMALIZATION,
        severity=ErrorSeverity.WARNING,
        is_transient=False,
        description="Payload cannot be parsed into a settlement event",
        recommended_action="Inspect payload; acknowledged to stop retries",
    ),
    "NRM_UNKNOWN_SOURCE": ErrorCodeInfo(
        code="NRM_UNKNOWN_SOURCE",
        category=ErrorCategory.NORMALIZATION,
        severity=ErrorSeverity.WARNING,
        is_transient=False,
        description="No source profile registered for this source",
        recommended_action="Check webhook routing",
        ack_status=404,
    ),

    # ========== CORRELATION ==========
    "REC_UNRESOLVED_CORRELATION": ErrorCodeInfo(
        code="REC_UNRESOLVED_CORRELATION",
        category=ErrorCategory.CORRELATION,
        severity=ErrorSeverity.INFO,
        is_transient=False,
        description="No unique settlement record matches the event",
        recommended_action="Review the unmatched-event ledger",
    ),

    # ========== TRANSITION ==========
    "REC_INVALID_TRANSITION": ErrorCodeInfo(
        code="REC_INVALID_TRANSITION",
        category=ErrorCategory.TRANSITION,
        severity=ErrorSeverity.WARNING,
        is_transient=False,
        description="Source reported an impossible status sequence",
        recommended_action="Check source status history",
    ),
    "REC_REFERENCE_MISMATCH": ErrorCodeInfo(
        code="REC_REFERENCE_MISMATCH",
        category=ErrorCategory.TRANSITION,
        severity=ErrorSeverity.ERROR,
        is_transient=False,
        description="Event reference differs from the reference already on the record",
        recommended_action="Manual review; never auto-resolve",
        requires_review=True,
    ),
    "REC_NOT_CANCELLABLE": ErrorCodeInfo(
        code="REC_NOT_CANCELLABLE",
        category=ErrorCategory.TRANSITION,
        severity=ErrorSeverity.INFO,
        is_transient=False,
        description="Record kind or status does not allow cancellation",
        recommended_action="None",
        ack_status=409,
    ),
    "REC_NOT_OWNER": ErrorCodeInfo(
        code="REC_NOT_OWNER",
        category=ErrorCategory.TRANSITION,
        severity=ErrorSeverity.WARNING,
        is_transient=False,
        description="Caller does not own the record",
        recommended_action="None",
        ack_status=403,
    ),

    # ========== CONCURRENCY ==========
    "REC_CONTENTION": ErrorCodeInfo(
        code="REC_CONTENTION",
        category=ErrorCategory.CONCURRENCY,
        severity=ErrorSeverity.WARNING,
        is_transient=True,
        description="Conditional write lost the race on every attempt",
        recommended_action="None; source redelivery will retry",
    ),

    # ========== STORE ==========
    "STO_RECORD_NOT_FOUND": ErrorCodeInfo(
        code="STO_RECORD_NOT_FOUND",
        category=ErrorCategory.STORE,
        severity=ErrorSeverity.ERROR,
        is_transient=False,
        description="Resolved record disappeared",
        recommended_action="Investigate record deletion",
    ),
    "STO_DUPLICATE_REFERENCE": ErrorCodeInfo(
        code="STO_DUPLICATE_REFERENCE",
        category=ErrorCategory.STORE,
        severity=ErrorSeverity.ERROR,
        is_transient=False,
        description="External reference already held by another record of the same kind",
        recommended_action="Manual review of both records",
        requires_review=True,
    ),
    "STO_FAILURE": ErrorCodeInfo(
        code="STO_FAILURE",
        category=ErrorCategory.STORE,
        severity=ErrorSeverity.ERROR,
        is_transient=True,
        description="Settlement store unavailable",
        recommended_action="Check database; source will redeliver",
        ack_status=503,
    ),

    # ========== INTERNAL ==========
    "INT_UNEXPECTED_ERROR": ErrorCodeInfo(
        code="INT_UNEXPECTED_ERROR",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.CRITICAL,
        is_transient=True,
        description="Unexpected internal error",
        recommended_action="Investigate error logs",
        ack_status=500,
    ),
}


REJECTION_CODES: Dict[RejectionReason, str] = {
    RejectionReason.INVALID_TRANSITION: "REC_INVALID_TRANSITION",
    RejectionReason.REFERENCE_MISMATCH: "REC_REFERENCE_MISMATCH",
    RejectionReason.CONTENTION: "REC_CONTENTION",
    RejectionReason.NOT_CANCELLABLE: "REC_NOT_CANCELLABLE",
    RejectionReason.NOT_OWNER: "REC_NOT_OWNER",
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or default unknown error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_transient=False,
        description=f"Unknown error: {code}",
        recommended_action="Investigate error",
        ack_status=500,
    ))


def error_code_for_outcome(outcome: TransitionOutcome) -> Optional[str]:
    """Error code for a rejected outcome, None otherwise."""
    if outcome.code != OutcomeCode.REJECTED or outcome.reason is None:
        return None
    return REJECTION_CODES[outcome.reason]


def log_level_for(code: str) -> int:
    """Logging level an error code is reported at."""
    return get_error_info(code).severity.log_level


# ============================================================
# ACKNOWLEDGMENT
# ============================================================

@dataclass
class Acknowledgment:
    """Response returned to the external source."""

    status_code: int
    body: Dict[str, Any]

    @property
    def accepted(self) -> bool:
        return 200 <= self.status_code < 300


def acknowledgment_for(
    error_code: Optional[str],
    outcome: Optional[str] = None,
    detail: Optional[str] = None,
) -> Acknowledgment:
    """
    Decide what the source is told.

    Pure function of the error code. A None code means the event
    was applied or acknowledged as a no-op.

    Args:
        error_code: Error code, or None on success
        outcome: Outcome name for the response body
        detail: Human-readable detail

    Returns:
        Acknowledgment
    """
    if error_code is None:
        return Acknowledgment(
            status_code=200,
            body={"received": True, "outcome": outcome or "ACKNOWLEDGED"},
        )

    info = get_error_info(error_code)
    body: Dict[str, Any] = {
        "received": 200 <= info.ack_status < 300,
        "outcome": outcome or info.category.value,
        "code": info.code,
    }
    if detail:
        body["detail"] = detail
    return Acknowledgment(status_code=info.ack_status, body=body)


# ============================================================
# ERROR SETS
# ============================================================

TRANSIENT_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_transient
}

REVIEW_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.requires_review
}
