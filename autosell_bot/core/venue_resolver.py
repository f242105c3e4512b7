"""Venue resolution: bonding curve until migration, aggregator forever after."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Protocol

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from autosell_bot.config import Settings
from autosell_bot.core.models import Venue
from autosell_bot.exceptions import ResolutionUnknown


class VenueResolverProtocol(Protocol):
    async def resolve(self, mint: str) -> Venue:
        """Return the venue to trade `mint` on, or raise ResolutionUnknown."""
        ...


class VenueResolver:
    """
    Resolves the execution venue for a mint.

    Migration is one-way: once a mint is seen as migrated it is never
    checked again. Unmigrated mints are re-checked on every call, since
    trading on the wrong venue fails outright.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.logger = logging.getLogger("autosell_bot.venue")
        self._client = client
        self._owns_client = client is None
        self._migrated: set[str] = set()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.API_TIMEOUT_SEC)
        return self._client

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def is_migrated(self, mint: str) -> bool:
        return mint in self._migrated

    def mark_migrated(self, mint: str) -> bool:
        """Record a migration. Returns True the first time only."""
        if mint in self._migrated:
            return False
        self._migrated.add(mint)
        self.logger.info("🚀 MIGRATED %s -> %s", mint[:8], Venue.AGGREGATOR.value)
        return True

    async def resolve(self, mint: str) -> Venue:
        if mint in self._migrated:
            return Venue.AGGREGATOR

        client = await self._ensure_client()
        url = f"{self.settings.PUMPFUN_API_BASE.rstrip('/')}/coins/{mint}"
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise ResolutionUnknown("venue lookup failed", mint=mint, error=str(e)) from e

        if response.status_code == 404:
            # Not a pump.fun coin at all: only routable through the aggregator
            self.mark_migrated(mint)
            return Venue.AGGREGATOR
        if response.status_code != 200:
            raise ResolutionUnknown("venue lookup failed", mint=mint, status=response.status_code)

        try:
            coin = response.json()
        except ValueError as e:
            raise ResolutionUnknown("venue lookup returned invalid JSON", mint=mint) from e

        if coin.get("complete") or coin.get("raydium_pool") or coin.get("pump_swap_pool"):
            self.mark_migrated(mint)
            return Venue.AGGREGATOR
        return Venue.BONDING_CURVE


class MigrationListener:
    """WebSocket client for PumpPortal migration events.

    Marks mints as migrated the moment the curve completes, so the next sell
    for that mint goes straight to the aggregator.
    """

    def __init__(
        self,
        settings: Settings,
        resolver: VenueResolver,
        on_migration: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.on_migration = on_migration
        self.logger = logging.getLogger("autosell_bot.migrations")
        self._running = False
        self._reconnect_delay = 1.0

    async def start(self) -> None:
        self._running = True
        while self._running:
            try:
                async with websockets.connect(self.settings.PUMPPORTAL_WS_URL) as ws:
                    self._reconnect_delay = 1.0  # Reset on successful connect
                    await ws.send(json.dumps({"method": "subscribeMigration"}))
                    self.logger.info("✅ PumpPortal: Subscribed to migration stream")

                    async for message in ws:
                        await self.handle_message(message)

            except ConnectionClosed as e:
                self.logger.warning("PumpPortal WebSocket closed: %s", e)
            except (OSError, WebSocketException) as e:
                self.logger.error("PumpPortal error: %s", e)

            if self._running:
                self.logger.info("PumpPortal reconnecting in %.1fs...", self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, 30.0)

    def stop(self) -> None:
        self._running = False

    async def handle_message(self, message: str | bytes) -> str | None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None

        mint = data.get("mint")
        if not mint or data.get("txType") != "migrate":
            return None

        if self.resolver.mark_migrated(str(mint)) and self.on_migration:
            await self.on_migration(str(mint))
        return str(mint)
