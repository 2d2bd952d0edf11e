"""
Settlement Engine - Event Normalizer.

============================================================
PURPOSE
============================================================
Translates each source's native payload into one canonical
SettlementEvent.

RESPONSIBILITIES:
- Verify payload authenticity where the source signs it
- Map native status vocabulary through an explicit table
- Extract the correlation key and heuristic hints

SOURCES:
- moonpay: fiat on-ramp, HMAC signature header
- transak: fiat on/off-ramp, body is a signed token
- helio: crypto checkout, shared bearer token
- ledger: transaction confirmations from the ledger poller

FAIL-OPEN RULE:
    "Unknown native statuses map to PROCESSING, never to FAILED."
    A record must not be stranded in PENDING because a source
    added a new status string.

No side effects beyond logging.

============================================================
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .clock import ClockProtocol, SystemClock
from .config import SignatureConfig
from .signatures import decode_signed_token, verify_bearer_token, verify_signature
from .types import (
    CanonicalStatus,
    InvalidSignatureError,
    MalformedPayloadError,
    SettlementEvent,
    SettlementKind,
    SettlementNetwork,
    SourceKind,
    UnknownSourceError,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATUS MAPPING TABLES
# ============================================================

# Keys are lower-cased native statuses.

MOONPAY_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "pending": CanonicalStatus.CREATED,
    "waitingpayment": CanonicalStatus.CREATED,
    "transaction_created": CanonicalStatus.CREATED,
    "waitingauthorization": CanonicalStatus.PROCESSING,
    "processing": CanonicalStatus.PROCESSING,
    "transaction_updated": CanonicalStatus.PROCESSING,
    "completed": CanonicalStatus.COMPLETED,
    "failed": CanonicalStatus.FAILED,
    "transaction_failed": CanonicalStatus.FAILED,
}

TRANSAK_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "awaiting_payment_from_user": CanonicalStatus.CREATED,
    "created": CanonicalStatus.CREATED,
    "payment_done_marked_by_user": CanonicalStatus.PROCESSING,
    "processing": CanonicalStatus.PROCESSING,
    "pending_delivery_from_transak": CanonicalStatus.PROCESSING,
    "completed": CanonicalStatus.COMPLETED,
    "failed": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
    "expired": CanonicalStatus.FAILED,
    "refunded": CanonicalStatus.FAILED,
}

# Helio reports payment, not token delivery; the ledger settles it.
HELIO_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "pending": CanonicalStatus.CREATED,
    "created": CanonicalStatus.PROCESSING,
    "success": CanonicalStatus.PROCESSING,
    "failed": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
}

LEDGER_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "submitted": CanonicalStatus.PROCESSING,
    "pending": CanonicalStatus.PROCESSING,
    "confirmed": CanonicalStatus.COMPLETED,
    "finalized": CanonicalStatus.COMPLETED,
    "success": CanonicalStatus.COMPLETED,
    "reverted": CanonicalStatus.FAILED,
    "failed": CanonicalStatus.FAILED,
    "dropped": CanonicalStatus.FAILED,
}


def map_status(
    status_map: Dict[str, CanonicalStatus],
    reported_status: str,
    source: str,
) -> CanonicalStatus:
    """
    Map a native status through a source table.

    Args:
        status_map: Source table
        reported_status: Native status string
        source: Source name (for logging)

    Returns:
        Canonical status; PROCESSING when unrecognized
    """
    mapped = status_map.get(reported_status.strip().lower())
    if mapped is None:
        logger.warning(
            f"Unknown {source} status '{reported_status}', treating as processing"
        )
        return CanonicalStatus.PROCESSING
    return mapped


# ============================================================
# EXTRACTION
# ============================================================

@dataclass
class ExtractedFields:
    """Source-specific fields pulled out of a payload."""

    source_event_id: str
    reported_status: str
    candidate_reference: Optional[str] = None
    owner: Optional[str] = None
    amount: Optional[Decimal] = None
    kind: Optional[SettlementKind] = None
    network: Optional[SettlementNetwork] = None
    block_or_slot: Optional[int] = None
    failure_reason: Optional[str] = None
    provider_reference: Optional[str] = None

    forced_status: Optional[CanonicalStatus] = None
    """Overrides the table (e.g. a dedicated failure event type)."""


def _parse_amount(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedPayloadError(f"{field_name} is not a decimal: {value!r}")
    if not amount.is_finite():
        raise MalformedPayloadError(f"{field_name} is not finite: {value!r}")
    return amount


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_moonpay(body: Dict[str, Any]) -> ExtractedFields:
    """
    MoonPay webhook.

    {"type": "transaction_updated",
     "data": {"id", "status", "cryptoTransactionId",
              "baseCurrencyAmount", "externalCustomerId",
              "externalTransactionId", "failureReason"}}
    """
    data = body.get("data")
    if not isinstance(data, dict):
        raise MalformedPayloadError("MoonPay payload has no data object")

    event_type = _optional_str(body.get("type"))
    order_id = _optional_str(data.get("id"))
    status = _optional_str(data.get("status")) or event_type
    if not order_id or not status:
        raise MalformedPayloadError("MoonPay payload missing transaction id or status")

    forced = CanonicalStatus.FAILED if event_type == "transaction_failed" else None

    return ExtractedFields(
        source_event_id=f"moonpay:{order_id}:{event_type or 'event'}:{status}",
        reported_status=status,
        candidate_reference=_optional_str(data.get("cryptoTransactionId")),
        owner=_optional_str(data.get("externalCustomerId") or body.get("externalCustomerId")),
        amount=_parse_amount(data.get("baseCurrencyAmount"), "baseCurrencyAmount"),
        kind=SettlementKind.PURCHASE,
        failure_reason=_optional_str(data.get("failureReason")),
        provider_reference=_optional_str(data.get("externalTransactionId")),
        forced_status=forced,
    )


def extract_transak(claims: Dict[str, Any]) -> ExtractedFields:
    """
    Transak webhook, from the verified token claims.

    {"eventID": "...",
     "webhookData": {"id", "status", "transactionHash",
                     "partnerCustomerId", "fiatAmount", "isBuyOrSell"}}

    Claims without a webhookData object are read as the order itself.
    """
    data = claims.get("webhookData", claims)
    if not isinstance(data, dict):
        raise MalformedPayloadError("Transak webhookData is not an object")

    order_id = _optional_str(data.get("id"))
    status = _optional_str(data.get("status"))
    if not order_id or not status:
        raise MalformedPayloadError("Transak payload missing order id or status")

    event_id = (
        _optional_str(claims.get("eventID"))
        or _optional_str(data.get("eventID"))
        or f"transak:{order_id}:{status}"
    )
    direction = (_optional_str(data.get("isBuyOrSell")) or "BUY").upper()

    return ExtractedFields(
        source_event_id=event_id,
        reported_status=status,
        candidate_reference=_optional_str(data.get("transactionHash")),
        owner=_optional_str(data.get("partnerCustomerId")),
        amount=_parse_amount(data.get("fiatAmount"), "fiatAmount"),
        kind=SettlementKind.PURCHASE if direction == "BUY" else None,
        failure_reason=_optional_str(data.get("statusReason")),
        provider_reference=order_id,
    )


# Helio reports USD totals in millionths
HELIO_USD_EXPONENT = -6


def extract_helio(body: Dict[str, Any]) -> ExtractedFields:
    """
    Helio checkout webhook.

    {"event": "CREATED",
     "transactionObject": {"id", "paylinkId", "fee", "quantity",
                           "meta": {"transactionSignature",
                                    "transactionStatus",
                                    "totalAmountAsUSD"}}}

    The payment's on-chain signature is the correlation key. Helio
    carries no customer id, so these events never match by heuristic.
    """
    event_name = _optional_str(body.get("event"))
    transaction = body.get("transactionObject")
    if not event_name or not isinstance(transaction, dict):
        raise MalformedPayloadError("Helio payload missing event or transactionObject")

    meta = transaction.get("meta") or {}
    if not isinstance(meta, dict):
        raise MalformedPayloadError("Helio transactionObject.meta is not an object")

    transaction_id = _optional_str(transaction.get("id"))
    signature = _optional_str(meta.get("transactionSignature"))
    if not transaction_id and not signature:
        raise MalformedPayloadError("Helio payload has neither transaction id nor signature")

    status = _optional_str(meta.get("transactionStatus")) or event_name
    total_usd = _parse_amount(meta.get("totalAmountAsUSD"), "totalAmountAsUSD")

    return ExtractedFields(
        source_event_id=f"helio:{transaction_id or signature}:{event_name}:{status}",
        reported_status=status,
        candidate_reference=signature or transaction_id,
        amount=total_usd.scaleb(HELIO_USD_EXPONENT) if total_usd is not None else None,
        kind=SettlementKind.PURCHASE,
        provider_reference=transaction_id,
    )


def extract_ledger(body: Dict[str, Any]) -> ExtractedFields:
    """
    Ledger confirmation.

    {"transaction_hash", "status", "block_or_slot", "network", "kind"?}
    """
    tx_hash = _optional_str(body.get("transaction_hash"))
    status = _optional_str(body.get("status"))
    if not tx_hash or not status:
        raise MalformedPayloadError("Ledger confirmation missing transaction_hash or status")

    network = None
    network_value = _optional_str(body.get("network"))
    if network_value:
        try:
            network = SettlementNetwork(network_value)
        except ValueError:
            raise MalformedPayloadError(f"Unknown network: {network_value}")

    kind = None
    kind_value = _optional_str(body.get("kind"))
    if kind_value:
        try:
            kind = SettlementKind(kind_value)
        except ValueError:
            raise MalformedPayloadError(f"Unknown kind: {kind_value}")

    block_or_slot = body.get("block_or_slot")
    if block_or_slot is not None:
        try:
            block_or_slot = int(block_or_slot)
        except (TypeError, ValueError):
            raise MalformedPayloadError(f"block_or_slot is not an integer: {block_or_slot!r}")

    return ExtractedFields(
        source_event_id=f"{network_value or 'ledger'}:{tx_hash}:{status.lower()}",
        reported_status=status,
        candidate_reference=tx_hash,
        kind=kind,
        network=network,
        block_or_slot=block_or_slot,
        failure_reason=_optional_str(body.get("error")),
    )


# ============================================================
# SOURCE PROFILES
# ============================================================

class AuthScheme(Enum):
    """How a source proves a delivery is genuine."""

    SIGNED_HEADER = "signed_header"
    SIGNED_TOKEN = "signed_token"
    BEARER_TOKEN = "bearer_token"


@dataclass
class SourceProfile:
    """How one source is authenticated, parsed and mapped."""

    name: str
    source_kind: SourceKind
    status_map: Dict[str, CanonicalStatus]
    extractor: Callable[[Dict[str, Any]], ExtractedFields]
    auth: Optional[AuthScheme] = AuthScheme.SIGNED_HEADER
    """None for internal feeds that carry no credentials."""

    @property
    def requires_signature(self) -> bool:
        return self.auth is not None


def default_profiles() -> Dict[str, SourceProfile]:
    """Profiles for every supported source."""
    return {
        "moonpay": SourceProfile(
            name="moonpay",
            source_kind=SourceKind.FIAT_PROVIDER,
            status_map=MOONPAY_STATUS_MAP,
            extractor=extract_moonpay,
        ),
        "transak": SourceProfile(
            name="transak",
            source_kind=SourceKind.FIAT_PROVIDER,
            status_map=TRANSAK_STATUS_MAP,
            extractor=extract_transak,
            auth=AuthScheme.SIGNED_TOKEN,
        ),
        "helio": SourceProfile(
            name="helio",
            source_kind=SourceKind.FIAT_PROVIDER,
            status_map=HELIO_STATUS_MAP,
            extractor=extract_helio,
            auth=AuthScheme.BEARER_TOKEN,
        ),
        "ledger": SourceProfile(
            name="ledger",
            source_kind=SourceKind.LEDGER_CONFIRMATION,
            status_map=LEDGER_STATUS_MAP,
            extractor=extract_ledger,
            auth=None,
        ),
    }


# ============================================================
# EVENT NORMALIZER
# ============================================================

RawPayload = Union[bytes, str, Dict[str, Any]]


class EventNormalizer:
    """
    Turns raw source payloads into SettlementEvents.

    Pure transformation plus authenticity check.
    """

    def __init__(
        self,
        signature_config: SignatureConfig,
        profiles: Optional[Dict[str, SourceProfile]] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize normalizer.

        Args:
            signature_config: Secrets and tolerance window
            profiles: Source profiles (defaults to all supported)
            clock: Time source for the validity window
        """
        self._signature_config = signature_config
        self._profiles = profiles if profiles is not None else default_profiles()
        self._clock = clock or SystemClock()

    @property
    def sources(self) -> list:
        return sorted(self._profiles)

    def profile(self, source: str) -> SourceProfile:
        """Get a source profile."""
        profile = self._profiles.get(source)
        if profile is None:
            raise UnknownSourceError(f"Unknown settlement source: {source}", source=source)
        return profile

    def normalize(
        self,
        source: str,
        raw_payload: RawPayload,
        signature_header: Optional[str] = None,
    ) -> SettlementEvent:
        """
        Normalize one delivery.

        Args:
            source: Source profile name
            raw_payload: Raw body (bytes/str) or already-decoded dict
            signature_header: Signature header value, if any

        Returns:
            SettlementEvent

        Raises:
            InvalidSignatureError: authenticity check failed
            MalformedPayloadError: payload cannot be parsed
            UnknownSourceError: no such source
        """
        profile = self.profile(source)

        body = self._authenticate(profile, raw_payload, signature_header)

        try:
            fields = profile.extractor(body)
        except MalformedPayloadError as e:
            e.source = profile.name
            raise

        canonical = fields.forced_status or map_status(
            profile.status_map, fields.reported_status, profile.name
        )

        event = SettlementEvent(
            source_kind=profile.source_kind,
            source=profile.name,
            source_event_id=fields.source_event_id,
            reported_status=fields.reported_status,
            canonical_status=canonical,
            candidate_reference=fields.candidate_reference,
            owner=fields.owner,
            amount=fields.amount,
            kind=fields.kind,
            network=fields.network,
            block_or_slot=fields.block_or_slot,
            failure_reason=fields.failure_reason,
            provider_reference=fields.provider_reference,
            received_at=self._clock.now(),
            raw_payload=body,
        )

        logger.debug(
            f"Normalized {profile.name} event {event.source_event_id}: "
            f"{event.reported_status} -> {event.canonical_status.value}"
        )
        return event

    def _authenticate(
        self,
        profile: SourceProfile,
        raw_payload: RawPayload,
        signature_header: Optional[str],
    ) -> Dict[str, Any]:
        """Check credentials per the source's scheme; returns the trusted body."""
        if profile.auth is None:
            return self._decode(profile, raw_payload)

        # The header signs the exact bytes received
        if profile.auth == AuthScheme.SIGNED_HEADER and isinstance(raw_payload, dict):
            raise InvalidSignatureError(
                f"{profile.name} payload must be verified against the raw body",
                source=profile.name,
            )

        secret = self._signature_config.secret_for(profile.name)
        if not secret:
            logger.error(f"No webhook secret configured for {profile.name}; rejecting delivery")
            raise InvalidSignatureError(
                f"No webhook secret configured for {profile.name}", source=profile.name
            )

        try:
            if profile.auth == AuthScheme.SIGNED_HEADER:
                verify_signature(
                    payload=raw_payload,
                    header=signature_header,
                    secret=secret,
                    now_timestamp=self._clock.timestamp(),
                    tolerance_seconds=self._signature_config.tolerance_seconds,
                )
                return self._decode(profile, raw_payload)

            if profile.auth == AuthScheme.BEARER_TOKEN:
                verify_bearer_token(signature_header, secret)
                return self._decode(profile, raw_payload)

            envelope = self._decode(profile, raw_payload)
            token = envelope.get("data")
            if not isinstance(token, str) or not token.strip():
                raise MalformedPayloadError(
                    f"{profile.name} payload has no signed data token", source=profile.name
                )
            return decode_signed_token(token.strip(), secret)
        except InvalidSignatureError as e:
            e.source = profile.name
            raise

    @staticmethod
    def _decode(profile: SourceProfile, raw_payload: RawPayload) -> Dict[str, Any]:
        if isinstance(raw_payload, dict):
            return raw_payload

        try:
            # Decimal keeps amounts exact
            body = json.loads(raw_payload, parse_float=Decimal)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedPayloadError(
                f"{profile.name} payload is not valid JSON: {e}", source=profile.name
            )

        if not isinstance(body, dict):
            raise MalformedPayloadError(
                f"{profile.name} payload is not a JSON object", source=profile.name
            )
        return body
