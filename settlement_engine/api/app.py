"""
Settlement API - Application.

============================================================
RESPONSIBILITY
============================================================
HTTP surface of the settlement engine.

- Inbound provider webhooks (authenticated, raw body)
- Internal ledger confirmation feed
- Record creation, query and redemption cancel
- Operator view of unmatched events

Acknowledgment status codes come from the error registry;
routes never decide them ad hoc.
============================================================
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..clock import ClockProtocol
from ..config import SettlementEngineConfig
from ..confirmations import LedgerConfirmationPoller, LedgerStatusClient, load_ledger_client
from ..dispatcher import MintHook, SettlementNotifier
from ..errors import error_code_for_outcome, get_error_info
from ..reconciler import SettlementReconciler
from ..store import SettlementStore, create_store
from ..types import (
    RecordNotFoundError,
    SettlementKind,
    SettlementStatus,
    SourceKind,
    StoreError,
)
from .schemas import (
    CancelRequest,
    HealthResponse,
    LedgerConfirmation,
    SettlementCreate,
    SettlementListResponse,
    SettlementResponse,
    TransitionResponse,
    UnmatchedEventResponse,
    UnmatchedListResponse,
)


logger = logging.getLogger(__name__)


# =============================================================
# HELPER: Dependencies
# =============================================================

def get_reconciler(request: Request) -> SettlementReconciler:
    return request.app.state.reconciler


def get_store(request: Request) -> SettlementStore:
    return request.app.state.store


def get_config(request: Request) -> SettlementEngineConfig:
    return request.app.state.config


# =============================================================
# APPLICATION FACTORY
# =============================================================

def create_app(
    config: Optional[SettlementEngineConfig] = None,
    store: Optional[SettlementStore] = None,
    clock: Optional[ClockProtocol] = None,
    notifiers: Optional[List[SettlementNotifier]] = None,
    mint_hook: Optional[MintHook] = None,
    ledger_client: Optional[LedgerStatusClient] = None,
) -> FastAPI:
    """
    Build the settlement API.

    The ledger confirmation poller runs inside the app while
    polling is enabled and a ledger client is available, either
    passed in or built from config.polling.client_factory.
    Without one, confirmations arrive only via POST /ledger/confirmations.

    Args:
        config: Engine configuration (defaults to production from env)
        store: Settlement store (defaults to the configured one)
        clock: Shared time source
        notifiers: Override configured notifiers
        mint_hook: Mint-confirmation hook
        ledger_client: Ledger status client for the poller

    Returns:
        FastAPI application
    """
    config = config or SettlementEngineConfig.for_production()
    store = store or create_store(config)
    reconciler = SettlementReconciler.build(
        store, config, clock=clock, notifiers=notifiers, mint_hook=mint_hook
    )

    poller = None
    if config.polling.enabled:
        if ledger_client is None and config.polling.client_factory:
            ledger_client = load_ledger_client(config.polling.client_factory)
        if ledger_client is not None:
            poller = LedgerConfirmationPoller(store, ledger_client, reconciler, config.polling)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.initialize()

        stop_polling = asyncio.Event()
        polling_task = None
        if poller is not None:
            polling_task = asyncio.create_task(poller.run(stop_polling))

        logger.info("Settlement API started")
        yield

        if polling_task is not None:
            stop_polling.set()
            await polling_task
        await reconciler.dispatcher.close()
        await store.close()
        logger.info("Settlement API stopped")

    app = FastAPI(
        title="Settlement Reconciliation API",
        description="Reconciles metal-token purchases, redemptions and gifts with providers and ledgers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.reconciler = reconciler
    app.state.poller = poller

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Settlement store failure on {request.url.path}: {exc}")
        info = get_error_info(exc.code)
        return JSONResponse(
            status_code=info.ack_status,
            content={"detail": "Settlement store unavailable", "code": info.code},
        )

    # =========================================================
    # INBOUND EVENTS
    # =========================================================

    @app.post("/webhooks/{provider}", tags=["Webhooks"])
    async def receive_webhook(
        provider: str,
        request: Request,
        reconciler: SettlementReconciler = Depends(get_reconciler),
        config: SettlementEngineConfig = Depends(get_config),
    ):
        """
        Provider webhook.

        The raw body is authenticated per the provider's scheme
        before anything is parsed.
        """
        normalizer = reconciler.normalizer
        if (
            provider not in normalizer.sources
            or normalizer.profile(provider).source_kind != SourceKind.FIAT_PROVIDER
        ):
            raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

        header_name = config.signature.headers.get(provider)
        credentials = request.headers.get(header_name) if header_name else None

        raw_body = await request.body()
        report = await reconciler.handle(provider, raw_body, credentials)
        ack = report.acknowledgment
        return JSONResponse(status_code=ack.status_code, content=ack.body)

    @app.post("/ledger/confirmations", tags=["Ledger"])
    async def receive_ledger_confirmation(
        confirmation: LedgerConfirmation,
        reconciler: SettlementReconciler = Depends(get_reconciler),
    ):
        """Ledger confirmation from the internal feed."""
        payload = confirmation.model_dump(mode="json", exclude_none=True)
        report = await reconciler.handle("ledger", payload)
        ack = report.acknowledgment
        return JSONResponse(status_code=ack.status_code, content=ack.body)

    # =========================================================
    # SETTLEMENT RECORDS
    # =========================================================

    @app.post(
        "/settlements",
        response_model=SettlementResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Settlements"],
    )
    async def create_settlement(
        body: SettlementCreate,
        reconciler: SettlementReconciler = Depends(get_reconciler),
    ):
        """Open a pending settlement record."""
        if not body.kyc_approved:
            raise HTTPException(status_code=403, detail="KYC approval required")

        try:
            record = await reconciler.engine.create_record(
                owner=body.owner,
                kind=body.kind,
                asset=body.asset,
                network=body.network,
                quantity=body.quantity,
                monetary_value=body.monetary_value,
                fee_value=body.fee_value,
                wallet_address=body.wallet_address,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return SettlementResponse.from_record(record)

    @app.get("/settlements", response_model=SettlementListResponse, tags=["Settlements"])
    async def list_settlements(
        owner: Optional[str] = Query(None, description="Filter by owner"),
        kind: Optional[SettlementKind] = Query(None, description="Filter by kind"),
        status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
        limit: int = Query(50, ge=1, le=200),
        store: SettlementStore = Depends(get_store),
    ):
        """Records, newest first."""
        records = await store.list_records(owner=owner, kind=kind, status=status_filter, limit=limit)
        return SettlementListResponse(
            records=[SettlementResponse.from_record(r) for r in records],
            count=len(records),
        )

    @app.get("/settlements/{record_id}", response_model=SettlementResponse, tags=["Settlements"])
    async def get_settlement(
        record_id: str,
        store: SettlementStore = Depends(get_store),
    ):
        """Get one record."""
        record = await store.get_record(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Settlement {record_id} not found")
        return SettlementResponse.from_record(record)

    @app.post(
        "/settlements/{record_id}/cancel",
        response_model=TransitionResponse,
        tags=["Settlements"],
    )
    async def cancel_settlement(
        record_id: str,
        body: CancelRequest,
        reconciler: SettlementReconciler = Depends(get_reconciler),
    ):
        """Cancel a pending redemption."""
        try:
            outcome = await reconciler.engine.cancel(record_id, body.owner, body.reason)
        except RecordNotFoundError:
            raise HTTPException(status_code=404, detail=f"Settlement {record_id} not found")

        code = error_code_for_outcome(outcome)
        if code is not None:
            info = get_error_info(code)
            status_code = info.ack_status if info.ack_status >= 400 else 409
            raise HTTPException(status_code=status_code, detail=outcome.message)

        await reconciler.dispatcher.dispatch(record_id)
        return TransitionResponse.from_outcome(outcome)

    # =========================================================
    # OPERATIONS
    # =========================================================

    @app.get("/unmatched", response_model=UnmatchedListResponse, tags=["Operations"])
    async def list_unmatched(
        source: Optional[str] = Query(None, description="Filter by source"),
        limit: int = Query(50, ge=1, le=500),
        reconciler: SettlementReconciler = Depends(get_reconciler),
    ):
        """Events that matched no unique record."""
        entries = await reconciler.ledger.list_entries(limit=limit, source=source)
        return UnmatchedListResponse(
            entries=[UnmatchedEventResponse.from_entry(e) for e in entries],
            count=len(entries),
        )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(store: SettlementStore = Depends(get_store)):
        """Health check endpoint."""
        store_ok = await store.health_check()
        return HealthResponse(
            status="healthy" if store_ok else "degraded",
            timestamp=datetime.now(timezone.utc).isoformat(),
            store_ok=store_ok,
        )
