"""Trade Executor - submits buys/sells through the resolved venue.

This module handles:
- Submission through an external swap service (venue-specific transaction
  building and signing live behind that service)
- Bounded retry of transient network failures with backoff
- Classification of on-chain rejects, which are never retried
- Paper fills for simulation mode
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx

from autosell_bot.config import ExecutionConfig, Settings
from autosell_bot.core.models import Side, Trade, Venue
from autosell_bot.core.price_feed import PriceFeedAdapter
from autosell_bot.exceptions import (
    ExecutionError,
    ExecutionErrorKind,
    FeedUnavailable,
    TransientSubmitError,
)
from autosell_bot.utils.retry import async_retry


@dataclass(frozen=True)
class FeeConfig:
    slippage_bps: int = 100
    priority_fee: int = 5000  # lamports
    use_bundle: bool = False

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> "FeeConfig":
        return cls(
            slippage_bps=config.slippage_bps,
            priority_fee=config.priority_fee_lamports,
            use_bundle=config.use_bundle,
        )


@dataclass(frozen=True)
class SwapReceipt:
    tx_ref: str
    confirmed_price: float
    confirmed_size: int


class SwapSubmitter(Protocol):
    async def submit(self, mint: str, venue: Venue, side: Side, size: int, fees: FeeConfig) -> SwapReceipt:
        """Submit and wait for confirmation. Raise TransientSubmitError or ExecutionError."""
        ...


def _error_kind(raw: str) -> ExecutionErrorKind:
    try:
        return ExecutionErrorKind(str(raw).upper())
    except ValueError:
        return ExecutionErrorKind.REJECTED


class HttpSwapSubmitter:
    """Posts swaps to the external swap-submission service and waits for its confirmation."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.logger = logging.getLogger("autosell_bot.swap_api")
        self._client = client
        self._owns_client = client is None
        self.endpoint = settings.SWAP_API_URL.rstrip("/") + "/execute"

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.settings.SWAP_API_KEY:
                headers["x-api-key"] = self.settings.SWAP_API_KEY
            self._client = httpx.AsyncClient(headers=headers, timeout=30.0)
        return self._client

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def submit(self, mint: str, venue: Venue, side: Side, size: int, fees: FeeConfig) -> SwapReceipt:
        client = await self._ensure_client()
        payload = {
            "mint": mint,
            "venue": venue.value,
            "side": side.value,
            "size": size,
            "wallet": self.settings.WALLET_ADDRESS,
            "slippageBps": fees.slippage_bps,
            "priorityFee": fees.priority_fee,
            "useBundle": fees.use_bundle,
        }
        try:
            response = await client.post(self.endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise TransientSubmitError("swap service timeout", mint=mint, error=str(e)) from e
        except httpx.TransportError as e:
            raise TransientSubmitError("swap service unreachable", mint=mint, error=str(e)) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSubmitError("swap service unavailable", mint=mint, status=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ExecutionError(ExecutionErrorKind.REJECTED, "invalid swap response", mint=mint) from e
        if not isinstance(data, dict):
            raise ExecutionError(ExecutionErrorKind.REJECTED, "invalid swap response", mint=mint, status=response.status_code)

        error = data.get("error")
        if error or response.status_code >= 400:
            error = error if isinstance(error, dict) else {"message": str(error or response.text)}
            raise ExecutionError(
                _error_kind(error.get("kind", "REJECTED")),
                str(error.get("message", "")),
                mint=mint,
                status=response.status_code,
            )

        try:
            return SwapReceipt(
                tx_ref=str(data.get("txRef", "")),
                confirmed_price=float(data.get("confirmedPrice", 0) or 0),
                confirmed_size=int(data.get("confirmedSize", 0) or 0),
            )
        except (TypeError, ValueError) as e:
            raise ExecutionError(ExecutionErrorKind.REJECTED, "malformed swap receipt", mint=mint, error=str(e)) from e


class PaperSubmitter:
    """Simulated fills at the current feed price with random slippage and a flat fee."""

    def __init__(
        self,
        price_feed: PriceFeedAdapter,
        seed: int | None = None,
        slippage_pct: float = 0.02,
        fee_bps: float = 100.0,
    ) -> None:
        self.price_feed = price_feed
        self.rng = random.Random(seed)
        self.slippage_pct = slippage_pct
        self.fee_bps = fee_bps

    async def submit(self, mint: str, venue: Venue, side: Side, size: int, fees: FeeConfig) -> SwapReceipt:
        try:
            quote = await self.price_feed.get_price(mint)
        except FeedUnavailable as e:
            raise TransientSubmitError("paper fill has no price", mint=mint) from e

        slippage = self.rng.uniform(-self.slippage_pct, self.slippage_pct)
        if abs(slippage) * 10_000 > fees.slippage_bps:
            raise ExecutionError(ExecutionErrorKind.SLIPPAGE_EXCEEDED, mint=mint, slippage=round(slippage, 4))

        fee_pct = min(0.5, self.fee_bps / 10_000.0)
        if side is Side.BUY:
            fill_price = quote.price * (1 + slippage) * (1 + fee_pct)
        else:
            fill_price = quote.price * (1 + slippage) * (1 - fee_pct)
        return SwapReceipt(
            tx_ref=f"paper-{uuid.uuid4().hex[:16]}",
            confirmed_price=max(1e-12, fill_price),
            confirmed_size=size,
        )


class TradeExecutor:
    """Wraps a submitter with timeout, bounded retry and result validation."""

    def __init__(self, submitter: SwapSubmitter, config: ExecutionConfig | None = None) -> None:
        self.submitter = submitter
        self.config = config or ExecutionConfig()
        self.logger = logging.getLogger("autosell_bot.executor")

    async def execute(
        self,
        mint: str,
        venue: Venue,
        side: Side,
        size: int,
        fee_config: FeeConfig | None = None,
    ) -> Trade:
        if size <= 0:
            raise ExecutionError(ExecutionErrorKind.REJECTED, "size must be positive", mint=mint, size=size)
        fees = fee_config or FeeConfig.from_config(self.config)

        @async_retry(
            max_attempts=self.config.max_retries,
            delay=self.config.retry_delay_sec,
            backoff=self.config.retry_backoff,
            exceptions=(TransientSubmitError, asyncio.TimeoutError),
        )
        async def submit_once() -> SwapReceipt:
            return await asyncio.wait_for(
                self.submitter.submit(mint, venue, side, size, fees),
                timeout=self.config.timeout_sec,
            )

        self.logger.info("%s %s size=%d venue=%s bundle=%s", side.value, mint[:8], size, venue.value, fees.use_bundle)
        try:
            receipt = await submit_once()
        except asyncio.TimeoutError as e:
            raise ExecutionError(ExecutionErrorKind.TIMEOUT, "confirmation timed out", mint=mint) from e
        except TransientSubmitError as e:
            raise ExecutionError(ExecutionErrorKind.TIMEOUT, str(e), mint=mint) from e

        if receipt.confirmed_size <= 0 or receipt.confirmed_price <= 0:
            raise ExecutionError(
                ExecutionErrorKind.REJECTED,
                "empty fill",
                mint=mint,
                size=receipt.confirmed_size,
                price=receipt.confirmed_price,
            )

        return Trade(
            side=side,
            size=receipt.confirmed_size,
            price=receipt.confirmed_price,
            venue=venue,
            tx_ref=receipt.tx_ref,
            confirmed_at=time.time(),
        )
