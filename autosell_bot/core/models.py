from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from autosell_bot.exceptions import ConfigurationException


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Venue(str, Enum):
    BONDING_CURVE = "BONDING_CURVE"
    AGGREGATOR = "AGGREGATOR"


class TriggerKind(str, Enum):
    PARTIAL_SELL = "PARTIAL_SELL"
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    TIME_BASED = "TIME_BASED"


@dataclass(frozen=True)
class TakeProfit:
    """Full exit once price >= entry * multiplier."""
    multiplier: float
    kind: ClassVar[TriggerKind] = TriggerKind.TAKE_PROFIT

    def __post_init__(self) -> None:
        if self.multiplier <= 0:
            raise ConfigurationException("take profit multiplier must be > 0", multiplier=self.multiplier)


@dataclass(frozen=True)
class StopLoss:
    """Full exit once price <= entry * (1 - percent). percent is a fraction (0.25 = 25%)."""
    percent: float
    kind: ClassVar[TriggerKind] = TriggerKind.STOP_LOSS

    def __post_init__(self) -> None:
        if not 0 < self.percent < 1:
            raise ConfigurationException("stop loss percent must be in (0, 1)", percent=self.percent)


@dataclass(frozen=True)
class TrailingStop:
    """Full exit once price <= peak * (1 - percent), armed after the peak rises above entry."""
    percent: float
    kind: ClassVar[TriggerKind] = TriggerKind.TRAILING_STOP

    def __post_init__(self) -> None:
        if not 0 < self.percent < 1:
            raise ConfigurationException("trailing stop percent must be in (0, 1)", percent=self.percent)


@dataclass(frozen=True)
class TimeBased:
    """Full exit once now >= opened_at + duration_ms."""
    duration_ms: int
    kind: ClassVar[TriggerKind] = TriggerKind.TIME_BASED

    def __post_init__(self) -> None:
        if self.duration_ms < 0:
            raise ConfigurationException("time based duration must be >= 0", duration_ms=self.duration_ms)


@dataclass(frozen=True)
class PartialSellLevel:
    """One ladder rung: sell `fraction` of the initial quantity at entry * multiplier."""
    multiplier: float
    fraction: float
    kind: ClassVar[TriggerKind] = TriggerKind.PARTIAL_SELL

    def __post_init__(self) -> None:
        if self.multiplier <= 0:
            raise ConfigurationException("ladder multiplier must be > 0", multiplier=self.multiplier)
        if not 0 < self.fraction <= 1:
            raise ConfigurationException("ladder fraction must be in (0, 1]", fraction=self.fraction)


Trigger = Union[TakeProfit, StopLoss, TrailingStop, TimeBased, PartialSellLevel]

FULL_EXIT_ORDER: tuple[type, ...] = (TakeProfit, StopLoss, TrailingStop, TimeBased)


def trigger_to_dict(trigger: Trigger) -> dict[str, Any]:
    if isinstance(trigger, TakeProfit):
        return {"type": trigger.kind.value, "multiplier": trigger.multiplier}
    if isinstance(trigger, StopLoss):
        return {"type": trigger.kind.value, "percent": trigger.percent}
    if isinstance(trigger, TrailingStop):
        return {"type": trigger.kind.value, "percent": trigger.percent}
    if isinstance(trigger, TimeBased):
        return {"type": trigger.kind.value, "duration_ms": trigger.duration_ms}
    if isinstance(trigger, PartialSellLevel):
        return {"type": trigger.kind.value, "multiplier": trigger.multiplier, "fraction": trigger.fraction}
    raise ConfigurationException("unknown trigger variant", trigger=repr(trigger))


def trigger_from_dict(data: dict[str, Any]) -> Trigger:
    """Parse a tagged trigger dict. Unknown tags or missing fields are configuration errors."""
    tag = str(data.get("type", "")).upper()
    try:
        if tag == TriggerKind.TAKE_PROFIT.value:
            return TakeProfit(multiplier=float(data["multiplier"]))
        if tag == TriggerKind.STOP_LOSS.value:
            return StopLoss(percent=float(data["percent"]))
        if tag == TriggerKind.TRAILING_STOP.value:
            return TrailingStop(percent=float(data["percent"]))
        if tag == TriggerKind.TIME_BASED.value:
            return TimeBased(duration_ms=int(data["duration_ms"]))
        if tag == TriggerKind.PARTIAL_SELL.value:
            return PartialSellLevel(multiplier=float(data["multiplier"]), fraction=float(data["fraction"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationException("malformed trigger", type=tag, error=str(e)) from e
    raise ConfigurationException("unknown trigger type", type=tag)


def describe_trigger(trigger: Trigger) -> str:
    if isinstance(trigger, (TakeProfit, PartialSellLevel)):
        return f"{trigger.kind.value}@{trigger.multiplier:g}x"
    if isinstance(trigger, (StopLoss, TrailingStop)):
        return f"{trigger.kind.value}@{trigger.percent * 100:g}%"
    return f"{trigger.kind.value}@{trigger.duration_ms}ms"


@dataclass(frozen=True)
class Trade:
    side: Side
    size: int
    price: float
    venue: Venue
    tx_ref: str
    confirmed_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "size": self.size,
            "price": self.price,
            "venue": self.venue.value,
            "tx_ref": self.tx_ref,
            "confirmed_at": self.confirmed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Trade":
        return cls(
            side=Side(data["side"]),
            size=int(data["size"]),
            price=float(data["price"]),
            venue=Venue(data["venue"]),
            tx_ref=str(data.get("tx_ref", "")),
            confirmed_at=float(data.get("confirmed_at", 0.0)),
        )


PositionKey = tuple[str, str]


@dataclass
class Position:
    mint: str
    wallet: str
    entry_price: float
    opened_at: float
    initial_quantity: int
    remaining_quantity: int
    peak_price: float
    triggers: list[Trigger] = field(default_factory=list)
    trades: list[Trade] = field(default_factory=list)
    last_price: float = 0.0
    frozen: bool = False
    frozen_reason: str = ""

    @property
    def key(self) -> PositionKey:
        return (self.mint, self.wallet)

    @property
    def is_closed(self) -> bool:
        return self.remaining_quantity == 0

    @property
    def peak_armed(self) -> bool:
        return self.peak_price > self.entry_price

    def ladder(self) -> list[PartialSellLevel]:
        return sorted(
            (t for t in self.triggers if isinstance(t, PartialSellLevel)),
            key=lambda level: level.multiplier,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mint": self.mint,
            "wallet": self.wallet,
            "entry_price": self.entry_price,
            "opened_at": self.opened_at,
            "initial_quantity": self.initial_quantity,
            "remaining_quantity": self.remaining_quantity,
            "peak_price": self.peak_price,
            "last_price": self.last_price,
            "triggers": [trigger_to_dict(t) for t in self.triggers],
            "trades": [t.to_dict() for t in self.trades],
            "frozen": self.frozen,
            "frozen_reason": self.frozen_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        return cls(
            mint=data["mint"],
            wallet=data["wallet"],
            entry_price=float(data["entry_price"]),
            opened_at=float(data["opened_at"]),
            initial_quantity=int(data["initial_quantity"]),
            remaining_quantity=int(data["remaining_quantity"]),
            peak_price=float(data["peak_price"]),
            triggers=[trigger_from_dict(t) for t in data.get("triggers", [])],
            trades=[Trade.from_dict(t) for t in data.get("trades", [])],
            last_price=float(data.get("last_price", 0.0)),
            frozen=bool(data.get("frozen", False)),
            frozen_reason=str(data.get("frozen_reason", "")),
        )


@dataclass(frozen=True)
class SellDecision:
    """Outcome of one evaluation: how much of the initial quantity to sell and which triggers retire."""
    fraction: float
    reason: str
    retire: tuple[Trigger, ...]
    fired: tuple[Trigger, ...]
    full_exit: bool = False

    def sell_size(self, position: Position) -> int:
        if self.full_exit:
            return position.remaining_quantity
        size = int(round(self.fraction * position.initial_quantity))
        return max(0, min(size, position.remaining_quantity))


@dataclass
class EngineStats:
    realized_pnl: float = 0.0
    positions_opened: int = 0
    positions_closed: int = 0
    positions_frozen: int = 0
    triggers_fired: int = 0
    execution_failures: int = 0
    feed_misses: int = 0
