"""P&L projection over a position's trade history. Read-only."""
from __future__ import annotations

from dataclasses import dataclass

from autosell_bot.core.models import Position, Side


@dataclass(frozen=True)
class PnLSnapshot:
    realized: float
    unrealized: float
    sold_quantity: int
    remaining_quantity: int
    current_price: float

    @property
    def total(self) -> float:
        return self.realized + self.unrealized


class PnLLedger:
    @staticmethod
    def unrealized(position: Position, current_price: float) -> float:
        return (current_price - position.entry_price) * position.remaining_quantity

    @staticmethod
    def realized(position: Position) -> float:
        return sum(
            (trade.price - position.entry_price) * trade.size
            for trade in position.trades
            if trade.side is Side.SELL
        )

    @staticmethod
    def sold_quantity(position: Position) -> int:
        return sum(trade.size for trade in position.trades if trade.side is Side.SELL)

    def snapshot(self, position: Position, current_price: float | None = None) -> PnLSnapshot:
        price = current_price if current_price is not None else position.last_price
        return PnLSnapshot(
            realized=self.realized(position),
            unrealized=self.unrealized(position, price),
            sold_quantity=self.sold_quantity(position),
            remaining_quantity=position.remaining_quantity,
            current_price=price,
        )

    @staticmethod
    def pnl_pct(position: Position, current_price: float) -> float:
        if position.entry_price <= 0:
            return 0.0
        return (current_price / position.entry_price - 1.0) * 100.0
