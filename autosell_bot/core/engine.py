"""
Auto-Sell Engine

Runs one lightweight task per open position. Each task wakes on the shared
tick grid (origin + n * interval) and runs the position's pipeline:

    poll price -> update peak -> evaluate triggers -> resolve venue
    -> execute sell -> mutate position -> alert

Pipelines for different positions run concurrently; a pipeline for one
position holds that position's lock, so two passes for the same position
never overlap. A sell that has been submitted is always awaited to the
end, even when the engine is paused or stopped mid-flight.
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from autosell_bot.config import EngineConfig
from autosell_bot.core.alerts import AlertSink, EventKind, LoggingAlertSink, PositionEvent
from autosell_bot.core.models import (
    EngineStats,
    Position,
    PositionKey,
    SellDecision,
    Side,
    Trade,
    Trigger,
    Venue,
    describe_trigger,
)
from autosell_bot.core.persistence import PositionSnapshotStore
from autosell_bot.core.pnl import PnLLedger
from autosell_bot.core.position_store import PositionStore
from autosell_bot.core.price_feed import PriceFeedAdapter, PriceQuote
from autosell_bot.core.scheduler import TickScheduler
from autosell_bot.core.trade_executor import FeeConfig, TradeExecutor
from autosell_bot.core.trigger_evaluator import TriggerEvaluator
from autosell_bot.core.venue_resolver import VenueResolverProtocol
from autosell_bot.exceptions import (
    DuplicatePosition,
    ExecutionError,
    FeedUnavailable,
    InvariantViolation,
    ResolutionUnknown,
    StateException,
)


class EngineState(str, Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


class TickPhase(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    EVALUATING = "EVALUATING"
    EXECUTING = "EXECUTING"


class TickResult(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    FEED_UNAVAILABLE = "FEED_UNAVAILABLE"
    NO_DECISION = "NO_DECISION"
    RESOLUTION_UNKNOWN = "RESOLUTION_UNKNOWN"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    SOLD = "SOLD"
    CLOSED = "CLOSED"
    FROZEN = "FROZEN"
    RETIRED = "RETIRED"


# Results after which the position task has nothing left to do
TERMINAL_RESULTS = frozenset({TickResult.NOT_FOUND, TickResult.CLOSED, TickResult.FROZEN})


class AutoSellEngine:
    def __init__(
        self,
        config: EngineConfig,
        store: PositionStore,
        price_feed: PriceFeedAdapter,
        resolver: VenueResolverProtocol,
        executor: TradeExecutor,
        alert_sink: AlertSink | None = None,
        snapshots: PositionSnapshotStore | None = None,
        evaluator: TriggerEvaluator | None = None,
        ledger: PnLLedger | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.price_feed = price_feed
        self.resolver = resolver
        self.executor = executor
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.snapshots = snapshots
        self.evaluator = evaluator or TriggerEvaluator()
        self.ledger = ledger or PnLLedger()
        self.fees = FeeConfig.from_config(config.execution)
        self.logger = logging.getLogger("autosell_bot.engine")

        self._clock = clock
        self._sleep = sleep
        self._request_slots = asyncio.Semaphore(config.polling.max_concurrent_requests)
        self._scheduler: TickScheduler | None = None
        self._tasks: dict[PositionKey, asyncio.Task] = {}
        self._alert_tasks: set[asyncio.Task] = set()
        self._pending_buys: set[PositionKey] = set()

        self.state = EngineState.STOPPED
        self.phases: dict[PositionKey, TickPhase] = {}
        self.feed_misses: dict[PositionKey, int] = {}
        self.stats = EngineStats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.state is EngineState.RUNNING:
            return
        if self.state is EngineState.PAUSED:
            raise StateException("engine is paused, use resume()")
        self._scheduler = TickScheduler(self.config.polling.interval_sec, origin=self._clock())
        self.state = EngineState.RUNNING
        for position in self.store.all():
            self._spawn(position.key)
        self.logger.info(
            "🤖 Engine started: %d positions, tick every %.1fs",
            len(self.store), self.config.polling.interval_sec,
        )

    async def pause(self) -> None:
        """Stop polling without touching position state. In-flight sells still complete."""
        if self.state is not EngineState.RUNNING:
            raise StateException("engine is not running", state=self.state.value)
        self.state = EngineState.PAUSED
        await self._cancel_tasks()
        self.logger.info("⏸️ Engine paused (%d positions preserved)", len(self.store))

    async def resume(self) -> None:
        """Resume on the original tick grid; the next tick is the next boundary, not now + interval."""
        if self.state is not EngineState.PAUSED:
            raise StateException("engine is not paused", state=self.state.value)
        self.state = EngineState.RUNNING
        for position in self.store.all():
            self._spawn(position.key)
        self.logger.info("▶️ Engine resumed, next tick at %.3f", self._scheduler.next_fire(self._clock()))

    async def stop(self) -> None:
        if self.state is EngineState.STOPPED:
            return
        self.state = EngineState.STOPPED
        await self._cancel_tasks()
        await self.drain_alerts()
        self._persist()
        self.logger.info("🛑 Engine stopped")

    async def drain_alerts(self) -> None:
        if self._alert_tasks:
            await asyncio.gather(*list(self._alert_tasks), return_exceptions=True)

    def _spawn(self, key: PositionKey) -> None:
        if self.state is not EngineState.RUNNING:
            return
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return
        self._tasks[key] = asyncio.create_task(self._run_position(key), name=f"position:{key[0][:8]}")

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _retire_task(self, key: PositionKey) -> None:
        """Cancel a closed or frozen position's task unless it is the caller."""
        task = self._tasks.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run_position(self, key: PositionKey) -> None:
        last_target = 0.0
        try:
            while self.state is EngineState.RUNNING:
                now = self._clock()
                target = self._scheduler.next_fire(max(now, last_target))
                last_target = target
                await self._sleep(max(0.0, target - now))
                if self.state is not EngineState.RUNNING:
                    break
                try:
                    result = await self.tick_position(key)
                except Exception:
                    self.logger.exception("Tick failed for %s", key[0][:8])
                    continue
                if result in TERMINAL_RESULTS:
                    break
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    # ------------------------------------------------------------------
    # Position entry points
    # ------------------------------------------------------------------

    def open_position(
        self,
        mint: str,
        wallet: str,
        entry_price: float,
        quantity: int,
        triggers: Iterable[Trigger] | None = None,
        opened_at: float | None = None,
        buy_trade: Trade | None = None,
    ) -> Position:
        if triggers is None:
            triggers = self.config.defaults.build()
        position = self.store.open(
            mint,
            wallet,
            entry_price,
            quantity,
            triggers,
            opened_at=opened_at if opened_at is not None else self._clock(),
            buy_trade=buy_trade,
        )
        self.stats.positions_opened += 1
        self._emit(PositionEvent(
            kind=EventKind.POSITION_OPENED,
            mint=mint,
            wallet=wallet,
            reason=", ".join(describe_trigger(t) for t in position.triggers),
            trade=buy_trade,
        ))
        self._persist()
        self._spawn(position.key)
        return position

    async def buy_and_open(
        self,
        mint: str,
        wallet: str,
        size: int,
        triggers: Iterable[Trigger] | None = None,
    ) -> Position:
        """Buy `size` token base units and open the position from the confirmed fill."""
        key = (mint, wallet)
        if (
            key in self.store
            or key in self._pending_buys
            or any(p.key == key for p in self.store.frozen())
        ):
            raise DuplicatePosition("position already open", mint=mint, wallet=wallet)
        # Reserved until the position is registered or the buy fails
        self._pending_buys.add(key)
        try:
            venue = await self._resolve(mint)
            async with self._request_slots:
                trade = await self.executor.execute(mint, venue, Side.BUY, size, self.fees)
            self.logger.info("🚀 BUY confirmed %s qty=%d @ %.10g (%s)", mint[:8], trade.size, trade.price, venue.value)
            return self.open_position(mint, wallet, trade.price, trade.size, triggers, buy_trade=trade)
        finally:
            self._pending_buys.discard(key)

    async def modify_triggers(self, mint: str, wallet: str, triggers: Iterable[Trigger]) -> Position:
        key = (mint, wallet)
        async with self.store.mutation(key):
            position = self.store.require(mint, wallet)
            self.store.set_triggers(position, triggers)
            self._emit(PositionEvent(
                kind=EventKind.TRIGGERS_UPDATED,
                mint=mint,
                wallet=wallet,
                reason=", ".join(describe_trigger(t) for t in position.triggers),
            ))
            self._persist()
            return position

    async def force_sell(self, mint: str, wallet: str, fraction: float = 1.0) -> TickResult:
        """Manual exit of `fraction` of the initial quantity through the normal execute path."""
        key = (mint, wallet)
        async with self.store.mutation(key):
            position = self.store.require(mint, wallet)
            remaining_fraction = position.remaining_quantity / position.initial_quantity
            full_exit = fraction >= remaining_fraction
            decision = SellDecision(
                fraction=min(fraction, remaining_fraction),
                reason="MANUAL",
                retire=tuple(position.triggers) if full_exit else (),
                fired=(),
                full_exit=full_exit,
            )
            try:
                return await self._execute_decision(position, decision)
            finally:
                self._settle_phase(key)

    def unfreeze(self, mint: str, wallet: str) -> Position:
        position = self.store.unfreeze(mint, wallet)
        self._persist()
        self._spawn(position.key)
        return position

    async def handle_migration(self, mint: str) -> None:
        """Callback for the migration listener."""
        for position in self.store.all():
            if position.mint == mint:
                self._emit(PositionEvent(kind=EventKind.VENUE_MIGRATED, mint=mint, wallet=position.wallet))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def tick_position(self, key: PositionKey) -> TickResult:
        if key not in self.store:
            return TickResult.NOT_FOUND
        async with self.store.mutation(key):
            # Re-read: the position may have closed while this pass waited for the lock
            position = self.store.get(*key)
            if position is None:
                return TickResult.NOT_FOUND
            try:
                return await self._pipeline(position)
            finally:
                self._settle_phase(key)

    def _settle_phase(self, key: PositionKey) -> None:
        if key in self.store:
            self.phases[key] = TickPhase.IDLE
        else:
            self.phases.pop(key, None)

    async def _pipeline(self, position: Position) -> TickResult:
        key = position.key
        self.phases[key] = TickPhase.POLLING
        try:
            quote = await self._poll(position.mint)
        except FeedUnavailable as e:
            self.feed_misses[key] = self.feed_misses.get(key, 0) + 1
            self.stats.feed_misses += 1
            self.logger.warning("Price unavailable for %s (miss #%d): %s", position.mint[:8], self.feed_misses[key], e)
            return TickResult.FEED_UNAVAILABLE
        self.feed_misses[key] = 0

        self.phases[key] = TickPhase.EVALUATING
        self.store.update_peak(position, quote.price)
        decision = self.evaluator.evaluate(position, quote.price, self._clock())
        if decision is None:
            return TickResult.NO_DECISION
        return await self._execute_decision(position, decision)

    async def _poll(self, mint: str) -> PriceQuote:
        async def fetch() -> PriceQuote:
            async with self._request_slots:
                return await self.price_feed.get_price(mint)

        # Waiting for a request slot counts against the poll timeout
        try:
            quote = await asyncio.wait_for(fetch(), timeout=self.config.polling.price_timeout_sec)
        except asyncio.TimeoutError as e:
            raise FeedUnavailable("price feed timeout", mint=mint) from e
        if quote.price <= 0:
            raise FeedUnavailable("non-positive price", mint=mint, price=quote.price)
        return quote

    async def _resolve(self, mint: str) -> Venue:
        async with self._request_slots:
            return await self.resolver.resolve(mint)

    async def _execute_decision(self, position: Position, decision: SellDecision) -> TickResult:
        key = position.key
        self.phases[key] = TickPhase.EXECUTING
        size = decision.sell_size(position)
        if size <= 0:
            # Ladder rung too small to trade at this quantity: retire it without a trade
            self.store.set_triggers(position, [t for t in position.triggers if t not in decision.retire])
            self.stats.triggers_fired += len(decision.fired)
            self.logger.info("Retired %s on %s without a trade (rounds to 0 units)", decision.reason, position.mint[:8])
            for trigger in decision.fired:
                self._emit(PositionEvent(
                    kind=EventKind.TRIGGER_FIRED,
                    mint=position.mint,
                    wallet=position.wallet,
                    reason=describe_trigger(trigger),
                    details={"size": 0},
                ))
            self._persist()
            return TickResult.RETIRED

        try:
            venue = await self._resolve(position.mint)
        except ResolutionUnknown as e:
            self.logger.warning("Venue unknown for %s, deferring %s: %s", position.mint[:8], decision.reason, e)
            return TickResult.RESOLUTION_UNKNOWN

        sell_task, cancelled = await self._run_to_completion(self._submit(position.mint, venue, size))
        try:
            trade = sell_task.result()
        except ExecutionError as e:
            self.stats.execution_failures += 1
            self.logger.warning(
                "❌ SELL FAILED %s %s (%s): %s",
                position.mint[:8], decision.reason, e.kind.value, e,
            )
            self._emit(PositionEvent(
                kind=EventKind.EXECUTION_FAILED,
                mint=position.mint,
                wallet=position.wallet,
                reason=f"missed {decision.reason}: {e.kind.value}",
                details={"size": size, "venue": venue.value},
            ))
            if cancelled:
                raise asyncio.CancelledError()
            return TickResult.EXECUTION_FAILED

        result = self._apply_trade(position, decision, trade, size)
        if cancelled:
            raise asyncio.CancelledError()
        return result

    async def _submit(self, mint: str, venue: Venue, size: int) -> Trade:
        async with self._request_slots:
            return await self.executor.execute(mint, venue, Side.SELL, size, self.fees)

    @staticmethod
    async def _run_to_completion(coro: Awaitable[Trade]) -> tuple[asyncio.Future, bool]:
        """Await `coro` to the end even if this task is cancelled meanwhile."""
        task = asyncio.ensure_future(coro)
        cancelled = False
        while True:
            try:
                await asyncio.shield(task)
                break
            except asyncio.CancelledError:
                if task.done():
                    break
                cancelled = True
            except Exception:
                break
        return task, cancelled

    def _apply_trade(self, position: Position, decision: SellDecision, trade: Trade, requested: int) -> TickResult:
        retire = decision.retire
        if decision.full_exit and trade.size < requested:
            # Short fill on a full exit: keep triggers so the rest goes next tick
            retire = ()
        try:
            remaining = self.store.apply_sell(position, trade, retire)
        except InvariantViolation as e:
            self._freeze(position, str(e))
            return TickResult.FROZEN

        pnl = self.ledger.snapshot(position, trade.price)
        fired = decision.fired or ()
        self.stats.triggers_fired += len(fired)
        self.logger.info(
            "💸 SELL %s qty=%d @ %.10g reason=%s remaining=%d",
            position.mint[:8], trade.size, trade.price, decision.reason, position.remaining_quantity,
        )
        labels = [describe_trigger(t) for t in fired] or [decision.reason]
        for label in labels:
            self._emit(PositionEvent(
                kind=EventKind.TRIGGER_FIRED,
                mint=position.mint,
                wallet=position.wallet,
                reason=label,
                trade=trade,
                pnl=pnl,
            ))

        if remaining is None:
            self.stats.positions_closed += 1
            self.stats.realized_pnl += pnl.realized
            self.feed_misses.pop(position.key, None)
            self._retire_task(position.key)
            self._emit(PositionEvent(
                kind=EventKind.POSITION_CLOSED,
                mint=position.mint,
                wallet=position.wallet,
                reason=decision.reason,
                trade=trade,
                pnl=pnl,
            ))
            self._persist()
            return TickResult.CLOSED

        self._persist()
        return TickResult.SOLD

    def _freeze(self, position: Position, reason: str) -> None:
        self.store.freeze(position, reason)
        self.stats.positions_frozen += 1
        self.feed_misses.pop(position.key, None)
        self._retire_task(position.key)
        self._emit(PositionEvent(
            kind=EventKind.POSITION_FROZEN,
            mint=position.mint,
            wallet=position.wallet,
            reason=reason,
        ))
        self._persist()

    # ------------------------------------------------------------------
    # Side channels
    # ------------------------------------------------------------------

    def _emit(self, event: PositionEvent) -> None:
        task = asyncio.create_task(self._deliver(event))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)

    async def _deliver(self, event: PositionEvent) -> None:
        try:
            await self.alert_sink.notify(event)
        except Exception as exc:
            self.logger.warning("Alert delivery failed (%s %s): %s", event.kind.value, event.mint[:8], exc)

    def _persist(self) -> None:
        if self.snapshots is None:
            return
        try:
            self.snapshots.save(self.store)
        except OSError as e:
            self.logger.error("Failed to write positions snapshot: %s", e)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "open_positions": len(self.store),
            "frozen_positions": len(self.store.frozen()),
            "running_tasks": sum(1 for t in self._tasks.values() if not t.done()),
            "realized_pnl": self.stats.realized_pnl,
            "positions_opened": self.stats.positions_opened,
            "positions_closed": self.stats.positions_closed,
            "triggers_fired": self.stats.triggers_fired,
            "execution_failures": self.stats.execution_failures,
            "feed_misses": dict(self.feed_misses),
        }

    def position_pnl(self, mint: str, wallet: str) -> Optional[dict[str, float]]:
        position = self.store.get(mint, wallet)
        if position is None:
            return None
        snap = self.ledger.snapshot(position)
        return {
            "realized": snap.realized,
            "unrealized": snap.unrealized,
            "total": snap.total,
            "pnl_pct": self.ledger.pnl_pct(position, position.last_price),
        }
