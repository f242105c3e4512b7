from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from html import escape
from typing import Any, Iterable, Protocol

import httpx

from autosell_bot.config import AlertConfig, Settings
from autosell_bot.core.models import Trade
from autosell_bot.core.pnl import PnLSnapshot


class EventKind(str, Enum):
    POSITION_OPENED = "POSITION_OPENED"
    TRIGGER_FIRED = "TRIGGER_FIRED"
    POSITION_CLOSED = "POSITION_CLOSED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    POSITION_FROZEN = "POSITION_FROZEN"
    TRIGGERS_UPDATED = "TRIGGERS_UPDATED"
    VENUE_MIGRATED = "VENUE_MIGRATED"


@dataclass(frozen=True)
class PositionEvent:
    kind: EventKind
    mint: str
    wallet: str = ""
    reason: str = ""
    trade: Trade | None = None
    pnl: PnLSnapshot | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)


class AlertSink(Protocol):
    async def notify(self, event: PositionEvent) -> None:
        ...


class LoggingAlertSink:
    def __init__(self) -> None:
        self.logger = logging.getLogger("autosell_bot.alerts")

    async def notify(self, event: PositionEvent) -> None:
        level = logging.WARNING if event.kind in (EventKind.EXECUTION_FAILED, EventKind.POSITION_FROZEN) else logging.INFO
        self.logger.log(level, "ALERT %s %s %s", event.kind.value, event.mint[:8], event.reason)


class FanoutAlertSink:
    """Delivers every event to each sink; one failing sink does not stop the others."""

    def __init__(self, sinks: Iterable[AlertSink]) -> None:
        self.sinks = list(sinks)
        self.logger = logging.getLogger("autosell_bot.alerts")

    async def notify(self, event: PositionEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.notify(event)
            except Exception as exc:
                self.logger.warning("Alert sink %s failed: %s", type(sink).__name__, exc)


DEFAULT_SUBSCRIPTION = frozenset(EventKind)


class TelegramAlertSink:
    """Telegram Bot API sink with per-subscriber event filters.

    Subscribers are process-scoped state owned by this instance: `load()`
    seeds them from config, `teardown()` drops them and closes the client.
    """

    def __init__(self, settings: Settings, config: AlertConfig, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.config = config
        self.token = settings.TELEGRAM_BOT_TOKEN
        self.enabled = (settings.TELEGRAM_ENABLED or config.telegram_enabled) and bool(self.token)
        self.client = client or httpx.AsyncClient(timeout=settings.API_TIMEOUT_SEC)
        self.logger = logging.getLogger("autosell_bot.telegram")
        self.subscribers: dict[str, set[EventKind]] = {}

    def load(self) -> None:
        kinds = set(DEFAULT_SUBSCRIPTION)
        if not self.config.notify_fills:
            kinds -= {EventKind.TRIGGER_FIRED, EventKind.POSITION_OPENED, EventKind.POSITION_CLOSED}
        if not self.config.notify_failures:
            kinds -= {EventKind.EXECUTION_FAILED}
        chat_ids = list(self.config.admin_ids)
        if self.settings.TELEGRAM_CHAT_ID:
            chat_ids.append(self.settings.TELEGRAM_CHAT_ID)
        for chat_id in chat_ids:
            self.subscribers[str(chat_id)] = set(kinds)

    async def teardown(self) -> None:
        self.subscribers.clear()
        await self.client.aclose()

    def subscribe(self, chat_id: str, kinds: Iterable[EventKind] = DEFAULT_SUBSCRIPTION) -> None:
        self.subscribers[str(chat_id)] = set(kinds)

    def unsubscribe(self, chat_id: str, kind: EventKind | None = None) -> None:
        if kind is None:
            self.subscribers.pop(str(chat_id), None)
        elif str(chat_id) in self.subscribers:
            self.subscribers[str(chat_id)].discard(kind)

    async def notify(self, event: PositionEvent) -> None:
        if not self.enabled:
            return
        text = build_event_message(event)
        for chat_id, kinds in list(self.subscribers.items()):
            if event.kind in kinds:
                await self._post("sendMessage", {
                    "chat_id": chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                })

    async def _post(self, method: str, payload: dict[str, Any]) -> Any:
        url = f"https://api.telegram.org/bot{self.token}/{method}"
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            self.logger.warning("Telegram %s failed: %s", method, exc)
            return {}


HEADERS = {
    EventKind.POSITION_OPENED: "🟢 <b>POSITION OPENED</b>",
    EventKind.TRIGGER_FIRED: "🎯 <b>TRIGGER FIRED</b>",
    EventKind.POSITION_CLOSED: "🚪 <b>POSITION CLOSED</b>",
    EventKind.EXECUTION_FAILED: "⚠️ <b>EXECUTION FAILED</b>",
    EventKind.POSITION_FROZEN: "🧊 <b>POSITION FROZEN</b>",
    EventKind.TRIGGERS_UPDATED: "🔧 <b>TRIGGERS UPDATED</b>",
    EventKind.VENUE_MIGRATED: "🚀 <b>MIGRATION DETECTED</b>",
}


def build_event_message(event: PositionEvent) -> str:
    mint = escape(event.mint)
    lines = [HEADERS[event.kind], f"🪙 <code>{mint}</code>"]
    if event.reason:
        lines.append(f"📝 {escape(event.reason)}")
    if event.trade:
        trade = event.trade
        lines.append(f"💵 {trade.side.value} {trade.size} @ {trade.price:.10g} ({trade.venue.value})")
        if trade.tx_ref and not trade.tx_ref.startswith("paper-"):
            lines.append(f'🔗 <a href="https://solscan.io/tx/{escape(trade.tx_ref)}">View on Solscan</a>')
    if event.pnl:
        emoji = "🟢" if event.pnl.total >= 0 else "🔴"
        lines.append(f"{emoji} Realized {event.pnl.realized:+.6g} | Unrealized {event.pnl.unrealized:+.6g}")
    for key, value in event.details.items():
        lines.append(f"• {escape(str(key))}: {escape(str(value))}")
    lines.append(f"⏰ {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(event.ts))}")
    return "\n".join(lines)
