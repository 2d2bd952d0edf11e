"""
Settlement Engine - Side-Effect Dispatcher.

============================================================
PURPOSE
============================================================
Fires a record's one-time terminal side effect.

SIDE EFFECTS:
- User/operator notification (log, Telegram)
- Mint-confirmation hook for completed purchases and gifts

AT-MOST-ONCE RULE:
    "notified is flipped false -> true by conditional write
     BEFORE any side effect runs."
    Whoever loses the flip does no work. A failing notifier is
    logged and never retried.

============================================================
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import aiohttp

from .config import NotificationConfig
from .store.base import RecordUpdate, SettlementStore
from .types import SettlementKind, SettlementRecord, SettlementStatus


logger = logging.getLogger(__name__)


MintHook = Callable[[SettlementRecord], Awaitable[None]]

MINT_KINDS = frozenset({SettlementKind.PURCHASE, SettlementKind.GIFT})


# ============================================================
# NOTICE
# ============================================================

_HEADLINES = {
    (SettlementKind.PURCHASE, SettlementStatus.COMPLETED): "Purchase completed",
    (SettlementKind.PURCHASE, SettlementStatus.FAILED): "Purchase failed",
    (SettlementKind.REDEMPTION, SettlementStatus.COMPLETED): "Redemption completed",
    (SettlementKind.REDEMPTION, SettlementStatus.FAILED): "Redemption failed",
    (SettlementKind.REDEMPTION, SettlementStatus.CANCELLED): "Redemption cancelled",
    (SettlementKind.GIFT, SettlementStatus.COMPLETED): "Gift delivered",
    (SettlementKind.GIFT, SettlementStatus.FAILED): "Gift failed",
}


@dataclass
class SettlementNotice:
    """What a notifier is asked to deliver."""

    record: SettlementRecord
    headline: str
    message: str

    @classmethod
    def for_record(cls, record: SettlementRecord) -> "SettlementNotice":
        headline = _HEADLINES.get(
            (record.kind, record.status),
            f"{record.kind.value.capitalize()} {record.status.value}",
        )
        message = (
            f"{record.quantity} {record.asset.value} "
            f"(${record.monetary_value}) on {record.network.value}"
        )
        if record.status == SettlementStatus.FAILED and record.failure_reason:
            message += f"\nReason: {record.failure_reason}"
        if record.status == SettlementStatus.CANCELLED and record.cancellation_reason:
            message += f"\nReason: {record.cancellation_reason}"
        return cls(record=record, headline=headline, message=message)


# ============================================================
# NOTIFIERS
# ============================================================

class SettlementNotifier(ABC):
    """Delivers a terminal-state notice somewhere."""

    name: str = "notifier"

    @abstractmethod
    async def notify(self, notice: SettlementNotice) -> bool:
        """
        Deliver a notice.

        Returns:
            True if delivered
        """
        pass

    async def close(self) -> None:
        pass


class LogNotifier(SettlementNotifier):
    """Writes notices to the log."""

    name = "log"

    async def notify(self, notice: SettlementNotice) -> bool:
        logger.info(
            f"[{notice.record.owner}] {notice.headline}: {notice.message} "
            f"(record {notice.record.record_id})"
        )
        return True


class TelegramNotifier(SettlementNotifier):
    """
    Sends notices to an operator Telegram chat.
    """

    name = "telegram"

    def __init__(self, config: NotificationConfig):
        self._config = config
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return self._config.telegram_enabled

    async def notify(self, notice: SettlementNotice) -> bool:
        if not self.is_configured:
            logger.debug(f"Telegram not configured, skipping notice: {notice.headline}")
            return False

        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

        url = f"https://api.telegram.org/bot{self._config.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": self._config.telegram_chat_id,
            "text": self._format_message(notice),
            "parse_mode": "HTML",
        }

        try:
            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    logger.info(f"Notice sent: {notice.headline}")
                    return True
                body = await response.text()
                logger.error(f"Telegram API error {response.status}: {body}")
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send Telegram notice: {e}")
            return False

    def _format_message(self, notice: SettlementNotice) -> str:
        record = notice.record
        lines = [
            f"<b>{notice.headline}</b>",
            notice.message,
            "",
            f"<b>Record:</b> <code>{record.record_id[:8]}...</code>",
            f"<b>Owner:</b> {record.owner}",
        ]
        if record.external_reference:
            lines.append(f"<b>Reference:</b> <code>{record.external_reference}</code>")
        return "\n".join(lines)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


# ============================================================
# DISPATCHER
# ============================================================

@dataclass
class DispatchResult:
    """Whether this call fired the side effect."""

    fired: bool
    reason: str
    delivered: int = 0
    """Notifiers that reported success."""


class SideEffectDispatcher:
    """
    Runs terminal side effects at most once per record.
    """

    def __init__(
        self,
        store: SettlementStore,
        notifiers: Optional[List[SettlementNotifier]] = None,
        mint_hook: Optional[MintHook] = None,
        config: Optional[NotificationConfig] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            store: Settlement store
            notifiers: Notice sinks (defaults to the log notifier)
            mint_hook: Called for completed purchases and gifts
            config: Notification configuration
        """
        self._store = store
        self._notifiers = notifiers if notifiers is not None else [LogNotifier()]
        self._mint_hook = mint_hook
        self._config = config or NotificationConfig()

    @classmethod
    def from_config(
        cls,
        store: SettlementStore,
        config: NotificationConfig,
        mint_hook: Optional[MintHook] = None,
    ) -> "SideEffectDispatcher":
        notifiers: List[SettlementNotifier] = [LogNotifier()]
        if config.telegram_enabled:
            notifiers.append(TelegramNotifier(config))
        return cls(store, notifiers=notifiers, mint_hook=mint_hook, config=config)

    async def dispatch(self, record_id: str) -> DispatchResult:
        """
        Fire the side effect for a terminal record, once.

        Args:
            record_id: Record that reached a terminal status

        Returns:
            DispatchResult
        """
        if not self._config.enabled:
            return DispatchResult(fired=False, reason="notifications disabled")

        record = await self._store.get_record(record_id)
        if record is None:
            logger.error(f"Cannot dispatch for missing record {record_id}")
            return DispatchResult(fired=False, reason="record not found")
        if not record.is_terminal:
            return DispatchResult(fired=False, reason="record not terminal")
        if record.notified:
            return DispatchResult(fired=False, reason="already notified")

        won = await self._store.conditional_update(
            record.record_id,
            record.status_version,
            RecordUpdate(notified=True, increment_version=False),
            expect_notified=False,
        )
        if not won:
            logger.debug(f"Record {record_id} notified by another worker")
            return DispatchResult(fired=False, reason="already notified")

        record.notified = True
        notice = SettlementNotice.for_record(record)
        delivered = 0
        for notifier in self._notifiers:
            try:
                if await notifier.notify(notice):
                    delivered += 1
            except Exception as e:
                logger.error(f"Notifier {notifier.name} failed for record {record_id}: {e}")

        if (
            self._mint_hook is not None
            and record.status == SettlementStatus.COMPLETED
            and record.kind in MINT_KINDS
        ):
            try:
                await self._mint_hook(record)
            except Exception as e:
                logger.error(f"Mint hook failed for record {record_id}: {e}. Manual follow-up required.")

        return DispatchResult(fired=True, reason="dispatched", delivered=delivered)

    async def close(self) -> None:
        for notifier in self._notifiers:
            await notifier.close()
