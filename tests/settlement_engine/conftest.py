"""
Shared fixtures for settlement engine tests.
"""

import itertools
import json
from datetime import datetime, timezone
from decimal import Decimal

import jwt
import pytest

from settlement_engine import (
    CanonicalStatus,
    InMemorySettlementStore,
    MetalAsset,
    MockClock,
    ReconciliationEngine,
    SettlementEngineConfig,
    SettlementEvent,
    SettlementKind,
    SettlementNetwork,
    SettlementRecord,
    SettlementStatus,
    SourceKind,
    sign_payload,
)


START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def config():
    return SettlementEngineConfig.for_testing()


@pytest.fixture
def store():
    return InMemorySettlementStore()


@pytest.fixture
def engine(store, config, clock):
    return ReconciliationEngine(store, config, clock)


@pytest.fixture
def make_record(store, clock):
    """Async factory persisting a record straight into the store."""

    async def _make(
        owner="user-1",
        kind=SettlementKind.PURCHASE,
        monetary_value=Decimal("100.00"),
        status=SettlementStatus.PENDING,
        external_reference=None,
        network=SettlementNetwork.EVM_PUBLIC,
        status_version=0,
        created_at=None,
    ):
        created_at = created_at or clock.now()
        record = SettlementRecord(
            owner=owner,
            kind=kind,
            asset=MetalAsset.GOLD,
            network=network,
            quantity=Decimal("1.5"),
            monetary_value=monetary_value,
            status=status,
            status_version=status_version,
            external_reference=external_reference,
            created_at=created_at,
            updated_at=created_at,
        )
        return await store.create_record(record)

    return _make


@pytest.fixture
def make_event(clock):
    """Factory for canonical events with unique source event ids."""
    counter = itertools.count(1)

    def _make(
        status=CanonicalStatus.PROCESSING,
        reference=None,
        owner="user-1",
        amount=Decimal("100.00"),
        event_id=None,
        source="moonpay",
        kind=None,
        failure_reason=None,
    ):
        source_kind = (
            SourceKind.LEDGER_CONFIRMATION if source == "ledger" else SourceKind.FIAT_PROVIDER
        )
        return SettlementEvent(
            source_kind=source_kind,
            source=source,
            source_event_id=event_id or f"{source}:evt-{next(counter)}",
            reported_status=status.value,
            canonical_status=status,
            candidate_reference=reference,
            owner=owner,
            amount=amount,
            kind=kind,
            failure_reason=failure_reason,
            received_at=clock.now(),
        )

    return _make


@pytest.fixture
def moonpay_delivery(config, clock):
    """Builds a signed MoonPay webhook body and signature header."""

    def _make(
        status,
        order_id="mp-order-1",
        event_type="transaction_updated",
        crypto_tx=None,
        owner="user-1",
        amount="100.00",
        signed_at=None,
        secret=None,
        external_tx=None,
    ):
        data = {
            "id": order_id,
            "status": status,
            "baseCurrencyAmount": amount,
            "externalCustomerId": owner,
        }
        if crypto_tx is not None:
            data["cryptoTransactionId"] = crypto_tx
        if external_tx is not None:
            data["externalTransactionId"] = external_tx
        raw = json.dumps({"type": event_type, "data": data}).encode("utf-8")
        timestamp = int(signed_at if signed_at is not None else clock.timestamp())
        header = sign_payload(
            secret or config.signature.secret_for("moonpay"), timestamp, raw
        )
        return raw, header

    return _make


@pytest.fixture
def transak_delivery(config):
    """Builds a Transak webhook body: {"data": <token signed with the access token>}."""

    def _make(
        status,
        event_id="tk-evt-1",
        order_id="tk-order-1",
        tx_hash=None,
        owner="user-1",
        amount="100.00",
        direction="BUY",
        secret=None,
    ):
        data = {
            "id": order_id,
            "status": status,
            "fiatAmount": amount,
            "partnerCustomerId": owner,
            "isBuyOrSell": direction,
        }
        if tx_hash is not None:
            data["transactionHash"] = tx_hash
        token = jwt.encode(
            {"eventID": event_id, "webhookData": data},
            secret or config.signature.secret_for("transak"),
            algorithm="HS256",
        )
        return json.dumps({"data": token}).encode("utf-8")

    return _make


@pytest.fixture
def helio_delivery(config):
    """Builds a Helio webhook body and its Authorization header."""

    def _make(
        signature="5xSolSig",
        transaction_id="helio-tx-1",
        event="CREATED",
        transaction_status="SUCCESS",
        total_usd_micros="100000000",
        token=None,
    ):
        body = {
            "event": event,
            "transactionObject": {
                "id": transaction_id,
                "paylinkId": "paylink-gold",
                "fee": "1000000000000",
                "quantity": 1,
                "meta": {
                    "transactionSignature": signature,
                    "transactionStatus": transaction_status,
                    "totalAmountAsUSD": total_usd_micros,
                    "currency": {"symbol": "USDC"},
                },
            },
        }
        raw = json.dumps(body).encode("utf-8")
        header = f"Bearer {token or config.signature.secret_for('helio')}"
        return raw, header

    return _make
