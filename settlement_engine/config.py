"""
Settlement Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the settlement reconciliation engine.

CRITICAL CONSTRAINTS:
- No self-scheduled retries (sources redeliver)
- Bounded conditional-write attempts
- Deterministic behavior

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from dotenv import load_dotenv


# ============================================================
# SIGNATURE CONFIGURATION
# ============================================================

@dataclass
class SignatureConfig:
    """
    Webhook signature verification.

    SAFETY: Stale deliveries are rejected outright.
    """

    tolerance_seconds: int = 30
    """Maximum age of a signing timestamp."""

    secrets: Dict[str, str] = field(default_factory=dict)
    """Credential per source profile; its meaning follows the source's auth scheme."""

    headers: Dict[str, str] = field(default_factory=lambda: {
        "moonpay": "Moonpay-Signature-V2",
        "helio": "Authorization",
    })
    """HTTP header carrying credentials, per source. Transak signs the body."""

    def secret_for(self, source: str) -> Optional[str]:
        """Get the shared secret for a source."""
        return self.secrets.get(source)


# ============================================================
# CORRELATION CONFIGURATION
# ============================================================

@dataclass
class CorrelationConfig:
    """
    Heuristic fallback matching.
    """

    amount_tolerance: Decimal = Decimal("0.01")
    """Maximum absolute difference between event amount and record value."""

    window_hours: int = 24
    """Only records created within this window are candidates."""

    enable_heuristic: bool = True
    """Whether to run the owner/amount fallback at all."""


# ============================================================
# CONCURRENCY CONFIGURATION
# ============================================================

@dataclass
class ConcurrencyConfig:
    """
    Optimistic concurrency.
    """

    max_attempts: int = 3
    """Conditional-write attempts before reporting contention."""


# ============================================================
# DEDUP CONFIGURATION
# ============================================================

@dataclass
class DedupConfig:
    """
    Source-level idempotency.
    """

    max_seen_per_record: int = 64
    """Seen source event ids kept per record; oldest rotate out."""


# ============================================================
# NOTIFICATION CONFIGURATION
# ============================================================

@dataclass
class NotificationConfig:
    """
    Terminal-state side effects.
    """

    enabled: bool = True
    """Whether to run side effects at all."""

    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    request_timeout_seconds: float = 10.0
    """Timeout for outbound notification calls."""

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    """
    Settlement store persistence.
    """

    url: str = "sqlite+aiosqlite:///:memory:"
    """SQLAlchemy async URL."""

    echo: bool = False
    """Log SQL statements."""

    pool_size: int = 10
    max_overflow: int = 20

    create_tables: bool = False
    """Create tables on startup (development only)."""


# ============================================================
# LEDGER POLLING CONFIGURATION
# ============================================================

@dataclass
class LedgerPollingConfig:
    """
    Ledger confirmation poller.
    """

    interval_seconds: float = 15.0
    """Delay between polling passes."""

    batch_size: int = 100
    """Records checked per pass."""

    enabled: bool = True
    """Run the poller inside the API process when a ledger client is available."""

    client_factory: Optional[str] = None
    """Import string ("module:callable") building the deployment's LedgerStatusClient."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class SettlementEngineConfig:
    """
    Master configuration for the settlement engine.
    """

    signature: SignatureConfig = field(default_factory=SignatureConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    polling: LedgerPollingConfig = field(default_factory=LedgerPollingConfig)

    use_memory_store: bool = False
    """Use the in-process store instead of SQLAlchemy."""

    @classmethod
    def for_testing(cls) -> "SettlementEngineConfig":
        """Get configuration for testing."""
        return cls(
            signature=SignatureConfig(secrets={
                "moonpay": "wk_test_moonpay",
                "transak": "tk_test_partner_access_token_000000",
                "helio": "wk_test_helio",
            }),
            notification=NotificationConfig(enabled=True),
            use_memory_store=True,
        )

    @classmethod
    def for_production(cls) -> "SettlementEngineConfig":
        """Get configuration for production."""
        config = cls.from_env()
        config.use_memory_store = False
        config.database.create_tables = False
        return config

    @classmethod
    def from_env(cls) -> "SettlementEngineConfig":
        """
        Build configuration from environment variables.

        Reads a .env file first when present.
        """
        load_dotenv()

        secrets = {}
        moonpay_secret = os.getenv("MOONPAY_WEBHOOK_SECRET")
        if moonpay_secret:
            secrets["moonpay"] = moonpay_secret
        transak_token = os.getenv("TRANSAK_ACCESS_TOKEN")
        if transak_token:
            secrets["transak"] = transak_token
        helio_token = os.getenv("HELIO_WEBHOOK_TOKEN")
        if helio_token:
            secrets["helio"] = helio_token

        return cls(
            signature=SignatureConfig(
                tolerance_seconds=int(os.getenv("SIGNATURE_TOLERANCE_SECONDS", "30")),
                secrets=secrets,
            ),
            correlation=CorrelationConfig(
                amount_tolerance=Decimal(os.getenv("CORRELATION_AMOUNT_TOLERANCE", "0.01")),
                window_hours=int(os.getenv("CORRELATION_WINDOW_HOURS", "24")),
            ),
            concurrency=ConcurrencyConfig(
                max_attempts=int(os.getenv("RECONCILE_MAX_ATTEMPTS", "3")),
            ),
            notification=NotificationConfig(
                enabled=os.getenv("SETTLEMENT_NOTIFICATIONS", "true").lower() == "true",
                telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
                telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
            ),
            database=DatabaseConfig(
                url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./settlements.db"),
                echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
                create_tables=os.getenv("DATABASE_CREATE_TABLES", "false").lower() == "true",
            ),
            polling=LedgerPollingConfig(
                interval_seconds=float(os.getenv("LEDGER_POLL_INTERVAL_SECONDS", "15")),
                enabled=os.getenv("LEDGER_POLLING_ENABLED", "true").lower() == "true",
                client_factory=os.getenv("LEDGER_STATUS_CLIENT") or None,
            ),
            use_memory_store=os.getenv("SETTLEMENT_STORE", "sql").lower() == "memory",
        )
