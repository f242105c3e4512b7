"""
Trigger Evaluator

Decides, for one position and one price snapshot, whether anything fires
and how much of the position to sell.

Precedence within a tick:
- Ladder levels, ascending multiplier
- Then TakeProfit, StopLoss, TrailingStop, TimeBased (first match wins)

A full-exit trigger takes precedence over the ladder: it sells everything
that remains and retires every remaining ladder level with it. Ladder
levels on their own may co-fire (a gap from 1x to 12x fires all of them).

All thresholds are measured against the fixed entry price or the peak,
never against remaining quantity, so partial sells do not move the
goalposts for later triggers.
"""

import logging
from typing import Optional

from autosell_bot.core.models import (
    FULL_EXIT_ORDER,
    PartialSellLevel,
    Position,
    SellDecision,
    StopLoss,
    TakeProfit,
    TimeBased,
    TrailingStop,
    Trigger,
    describe_trigger,
)

logger = logging.getLogger(__name__)


def trigger_holds(trigger: Trigger, position: Position, price: float, now: float) -> bool:
    """Check a single trigger condition. Exhaustive over the trigger variants."""
    if isinstance(trigger, PartialSellLevel):
        return price >= position.entry_price * trigger.multiplier
    if isinstance(trigger, TakeProfit):
        return price >= position.entry_price * trigger.multiplier
    if isinstance(trigger, StopLoss):
        return price <= position.entry_price * (1 - trigger.percent)
    if isinstance(trigger, TrailingStop):
        # Not armed until the peak has moved above entry
        if not position.peak_armed:
            return False
        return price <= position.peak_price * (1 - trigger.percent)
    if isinstance(trigger, TimeBased):
        return now >= position.opened_at + trigger.duration_ms / 1000.0
    raise TypeError(f"Unhandled trigger variant: {trigger!r}")


class TriggerEvaluator:
    """
    Stateless evaluator. Returns a SellDecision (including the triggers to
    retire) or None; the Position Store applies the retirement once the
    sell is confirmed, which is what makes firing at-most-once.
    """

    def evaluate(self, position: Position, current_price: float, now: float) -> Optional[SellDecision]:
        if position.frozen or position.remaining_quantity <= 0 or position.initial_quantity <= 0:
            return None
        if current_price <= 0:
            return None

        remaining_fraction = position.remaining_quantity / position.initial_quantity
        ladder = position.ladder()
        fired_levels = tuple(level for level in ladder if trigger_holds(level, position, current_price, now))

        full_exit = self._first_full_exit(position, current_price, now)
        if full_exit is not None:
            fired = fired_levels + (full_exit,)
            logger.info(
                "EXIT %s %s @ %.10g (entry %.10g, peak %.10g)",
                position.mint[:8],
                describe_trigger(full_exit),
                current_price,
                position.entry_price,
                position.peak_price,
            )
            return SellDecision(
                fraction=remaining_fraction,
                reason=full_exit.kind.value,
                retire=tuple(ladder) + (full_exit,),
                fired=fired,
                full_exit=True,
            )

        if not fired_levels:
            return None

        requested = sum(level.fraction for level in fired_levels)
        fraction = min(requested, remaining_fraction)
        # Ladder that sells everything left is a full exit in disguise
        closes = fraction >= remaining_fraction
        logger.info(
            "PARTIAL SELL %s %s -> %.1f%% of initial",
            position.mint[:8],
            ",".join(describe_trigger(level) for level in fired_levels),
            fraction * 100,
        )
        return SellDecision(
            fraction=fraction,
            reason=fired_levels[0].kind.value,
            retire=fired_levels,
            fired=fired_levels,
            full_exit=closes,
        )

    def _first_full_exit(self, position: Position, price: float, now: float) -> Optional[Trigger]:
        for variant in FULL_EXIT_ORDER:
            for trigger in position.triggers:
                if type(trigger) is variant and trigger_holds(trigger, position, price, now):
                    return trigger
        return None
