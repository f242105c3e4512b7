"""
Position Store

Single writer of position state. Positions are keyed by (mint, wallet);
every mutation for a position goes through here, and callers that run a
full poll -> evaluate -> execute -> mutate pipeline hold the position's
lock so two pipelines for the same position never interleave.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from autosell_bot.core.models import Position, PositionKey, Side, Trade, Trigger
from autosell_bot.exceptions import DuplicatePosition, InvariantViolation, PositionNotFound


class PositionStore:
    def __init__(self) -> None:
        self.logger = logging.getLogger("autosell_bot.positions")
        self._positions: dict[PositionKey, Position] = {}
        self._frozen: dict[PositionKey, Position] = {}
        self._locks: dict[PositionKey, asyncio.Lock] = {}
        self._lock_users: dict[PositionKey, int] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, mint: str, wallet: str) -> Optional[Position]:
        return self._positions.get((mint, wallet))

    def require(self, mint: str, wallet: str) -> Position:
        position = self._positions.get((mint, wallet))
        if position is None:
            raise PositionNotFound("no open position", mint=mint, wallet=wallet)
        return position

    def all(self) -> list[Position]:
        return list(self._positions.values())

    def frozen(self) -> list[Position]:
        return list(self._frozen.values())

    def __contains__(self, key: PositionKey) -> bool:
        return key in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def lock_for(self, key: PositionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def mutation(self, key: PositionKey) -> AsyncIterator[None]:
        """Hold the per-position lock for one pipeline pass."""
        lock = self.lock_for(key)
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Dropped only once no waiter is queued and the position is gone.
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                if key not in self._positions and key not in self._frozen:
                    self._locks.pop(key, None)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def open(
        self,
        mint: str,
        wallet: str,
        entry_price: float,
        quantity: int,
        triggers: Iterable[Trigger],
        opened_at: float | None = None,
        buy_trade: Trade | None = None,
    ) -> Position:
        key = (mint, wallet)
        if key in self._positions or key in self._frozen:
            raise DuplicatePosition("position already open", mint=mint, wallet=wallet)
        if quantity <= 0:
            raise InvariantViolation("cannot open empty position", mint=mint, quantity=quantity)
        if entry_price <= 0:
            raise InvariantViolation("entry price must be positive", mint=mint, entry_price=entry_price)

        position = Position(
            mint=mint,
            wallet=wallet,
            entry_price=entry_price,
            opened_at=opened_at if opened_at is not None else time.time(),
            initial_quantity=quantity,
            remaining_quantity=quantity,
            peak_price=entry_price,
            triggers=list(triggers),
            trades=[buy_trade] if buy_trade else [],
            last_price=entry_price,
        )
        self._positions[key] = position
        self.logger.info(
            "OPEN %s wallet=%s qty=%d entry=%.10g triggers=%d",
            mint[:8], wallet[:8], quantity, entry_price, len(position.triggers),
        )
        return position

    def restore(self, positions: Iterable[Position]) -> int:
        """Re-register positions loaded from a snapshot, frozen ones included."""
        count = 0
        for position in positions:
            if position.key in self._positions or position.key in self._frozen:
                self.logger.warning("Skipping duplicate restored position %s", position.mint[:8])
                continue
            if position.frozen:
                self._frozen[position.key] = position
            else:
                self._positions[position.key] = position
            count += 1
        return count

    def update_peak(self, position: Position, price: float) -> None:
        position.last_price = price
        if price > position.peak_price:
            position.peak_price = price

    def set_triggers(self, position: Position, triggers: Iterable[Trigger]) -> None:
        position.triggers = list(triggers)

    def apply_sell(self, position: Position, trade: Trade, retired: Iterable[Trigger] = ()) -> Optional[Position]:
        """
        Record a confirmed sell. Returns the position, or None when it closed
        and was removed. Raises InvariantViolation on oversell; the caller
        freezes the position in that case.
        """
        if trade.side is not Side.SELL:
            raise InvariantViolation("apply_sell called with non-sell trade", mint=position.mint, side=trade.side.value)
        if trade.size <= 0:
            raise InvariantViolation("sell size must be positive", mint=position.mint, size=trade.size)
        if trade.size > position.remaining_quantity:
            raise InvariantViolation(
                "oversell",
                mint=position.mint,
                size=trade.size,
                remaining=position.remaining_quantity,
            )

        position.remaining_quantity -= trade.size
        position.trades.append(trade)
        for trigger in retired:
            if trigger in position.triggers:
                position.triggers.remove(trigger)

        if position.remaining_quantity == 0:
            self._positions.pop(position.key, None)
            self.logger.info("CLOSED %s wallet=%s trades=%d", position.mint[:8], position.wallet[:8], len(position.trades))
            return None
        return position

    def freeze(self, position: Position, reason: str) -> None:
        """Take a position out of evaluation and flag it for manual review."""
        position.frozen = True
        position.frozen_reason = reason
        self._positions.pop(position.key, None)
        self._frozen[position.key] = position
        self.logger.error("FROZEN %s wallet=%s: %s", position.mint[:8], position.wallet[:8], reason)

    def unfreeze(self, mint: str, wallet: str) -> Position:
        key = (mint, wallet)
        position = self._frozen.pop(key, None)
        if position is None:
            raise PositionNotFound("no frozen position", mint=mint, wallet=wallet)
        position.frozen = False
        position.frozen_reason = ""
        self._positions[key] = position
        self.logger.info("UNFROZEN %s wallet=%s", mint[:8], wallet[:8])
        return position
