"""
Price Feed Adapter

Fetches the current price of a tracked mint.

Sources:
- Jupiter Price API v3 (primary)
- DexScreener (fallback, highest-liquidity pair)

Never returns stale data: every call either produces a fresh quote or
raises FeedUnavailable, and the engine skips the position for that tick.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from autosell_bot.config import Settings
from autosell_bot.exceptions import FeedUnavailable
from autosell_bot.utils.rate_limiter import TokenBucket
from autosell_bot.utils.retry import CircuitBreaker


@dataclass(frozen=True)
class PriceQuote:
    mint: str
    price: float
    as_of: float
    source: str = ""


class PriceFeedAdapter(Protocol):
    async def get_price(self, mint: str) -> PriceQuote:
        """Return a fresh quote or raise FeedUnavailable."""
        ...


class JupiterPriceFeed:
    """Jupiter-first price feed with DexScreener fallback."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        requests_per_second: float = 5.0,
    ) -> None:
        self.settings = settings
        self.logger = logging.getLogger("autosell_bot.price_feed")
        self._client = client
        self._owns_client = client is None
        self._limiter = TokenBucket(rate=requests_per_second, capacity=max(1, int(requests_per_second * 2)))
        # DexScreener public limit, shared by every position
        self._dex_limiter = TokenBucket(rate=5.0, capacity=10)
        self._breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=60.0, name="JupiterPrice")

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.settings.JUPITER_API_KEY:
                headers["x-api-key"] = self.settings.JUPITER_API_KEY
            self._client = httpx.AsyncClient(headers=headers, timeout=self.settings.API_TIMEOUT_SEC)
        return self._client

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_price(self, mint: str) -> PriceQuote:
        if self._breaker.can_execute():
            try:
                price = await self._fetch_jupiter(mint)
                self._breaker.record_success()
                if price > 0:
                    return PriceQuote(mint=mint, price=price, as_of=time.time(), source="jupiter")
            except (httpx.HTTPError, ValueError) as e:
                self._breaker.record_failure()
                self.logger.debug("Jupiter price failed for %s: %s", mint[:8], e)

        try:
            price = await self._fetch_dexscreener(mint)
        except (httpx.HTTPError, ValueError) as e:
            raise FeedUnavailable("price fetch failed", mint=mint, error=str(e)) from e

        if price <= 0:
            raise FeedUnavailable("no price", mint=mint)
        return PriceQuote(mint=mint, price=price, as_of=time.time(), source="dexscreener")

    async def _fetch_jupiter(self, mint: str) -> float:
        await self._limiter.acquire()
        client = await self._ensure_client()
        response = await client.get(self.settings.JUPITER_PRICE_API_BASE, params={"ids": mint})
        response.raise_for_status()
        data = response.json()
        prices_data = data.get("data", data) if isinstance(data, dict) else {}
        price_info = prices_data.get(mint) or {}
        return float(price_info.get("usdPrice") or price_info.get("price") or 0)

    async def _fetch_dexscreener(self, mint: str) -> float:
        await self._dex_limiter.acquire()
        client = await self._ensure_client()
        url = f"{self.settings.DEXSCREENER_API_BASE.rstrip('/')}/tokens/{mint}"
        response = await client.get(url)
        response.raise_for_status()
        pairs = [
            p for p in (response.json().get("pairs") or [])
            if (p.get("baseToken") or {}).get("address") == mint
        ]
        if not pairs:
            return 0.0
        best_pair = max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd", 0) or 0))
        return float(best_pair.get("priceUsd", 0) or 0)
