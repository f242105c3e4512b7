"""
Tests for the auto-sell engine pipeline.

Covers:
1. Take profit, trailing stop, ladder and time-based exits
2. Failure paths (feed miss, unknown venue, rejected trade, oversell)
3. Per-position serialization and independence across positions
4. In-flight sells surviving cancellation
5. Lifecycle (start / pause / resume / stop)
"""

import asyncio
import time

import pytest

from autosell_bot.core.alerts import EventKind
from autosell_bot.core.engine import EngineState, TickResult
from autosell_bot.core.models import (
    PartialSellLevel,
    Side,
    StopLoss,
    TakeProfit,
    TimeBased,
    TrailingStop,
)
from autosell_bot.core.persistence import PositionSnapshotStore
from autosell_bot.exceptions import DuplicatePosition, ExecutionError, StateException
from autosell_bot.tests.fakes import (
    MINT_A,
    MINT_B,
    WALLET,
    FakeClock,
    RecordingSink,
    build_engine,
    slippage_error,
)

KEY_A = (MINT_A, WALLET)
KEY_B = (MINT_B, WALLET)

LADDER = [
    PartialSellLevel(multiplier=2.0, fraction=0.25),
    PartialSellLevel(multiplier=5.0, fraction=0.25),
    PartialSellLevel(multiplier=10.0, fraction=0.5),
]


class TestExits:
    """Each trigger kind driven through the full pipeline"""

    def test_take_profit_fires_once(self):
        async def scenario():
            engine, feed, _, submitter, sink = build_engine({MINT_A: 1.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])

            feed.prices[MINT_A] = 1.5
            assert await engine.tick_position(KEY_A) == TickResult.NO_DECISION

            feed.prices[MINT_A] = 2.0
            assert await engine.tick_position(KEY_A) == TickResult.CLOSED
            assert await engine.tick_position(KEY_A) == TickResult.NOT_FOUND
            await engine.drain_alerts()
            return engine, submitter, sink

        engine, submitter, sink = asyncio.run(scenario())
        assert submitter.sell_sizes == [1000]
        assert KEY_A not in engine.store
        assert sink.kinds().count(EventKind.TRIGGER_FIRED) == 1
        assert EventKind.POSITION_CLOSED in sink.kinds()
        assert engine.stats.realized_pnl == pytest.approx(1000.0)

    def test_trailing_stop_fires_after_peak(self):
        async def scenario():
            engine, feed, _, submitter, _ = build_engine({MINT_A: 1.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TrailingStop(0.2)])
            results = []
            for price in (5.0, 10.0, 8.5, 8.0):
                feed.prices[MINT_A] = price
                results.append(await engine.tick_position(KEY_A))
            return results, submitter

        results, submitter = asyncio.run(scenario())
        assert results == [
            TickResult.NO_DECISION,
            TickResult.NO_DECISION,
            TickResult.NO_DECISION,
            TickResult.CLOSED,
        ]
        assert submitter.sell_sizes == [1000]

    def test_trailing_stop_not_armed_below_entry(self):
        async def scenario():
            engine, feed, _, submitter, _ = build_engine({MINT_A: 1.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TrailingStop(0.2)])
            feed.prices[MINT_A] = 0.5
            return await engine.tick_position(KEY_A), submitter

        result, submitter = asyncio.run(scenario())
        assert result == TickResult.NO_DECISION
        assert submitter.calls == []

    def test_ladder_sells_each_level_once(self):
        async def scenario():
            engine, feed, _, submitter, _ = build_engine({MINT_A: 1.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            results = []
            for price in (2.0, 2.5, 5.0, 10.0):
                feed.prices[MINT_A] = price
                results.append(await engine.tick_position(KEY_A))
            return results, submitter

        results, submitter = asyncio.run(scenario())
        assert results == [TickResult.SOLD, TickResult.NO_DECISION, TickResult.SOLD, TickResult.CLOSED]
        assert submitter.sell_sizes == [250, 250, 500]

    def test_ladder_gap_fires_all_levels_in_one_trade(self):
        async def scenario():
            engine, feed, _, submitter, sink = build_engine({MINT_A: 12.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            result = await engine.tick_position(KEY_A)
            await engine.drain_alerts()
            return result, submitter, sink

        result, submitter, sink = asyncio.run(scenario())
        assert result == TickResult.CLOSED
        assert submitter.sell_sizes == [1000]
        assert sink.kinds().count(EventKind.TRIGGER_FIRED) == 3

    def test_stop_loss_overrides_ladder(self):
        async def scenario():
            engine, feed, _, submitter, _ = build_engine({MINT_A: 2.0})
            position = engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER + [StopLoss(0.5)])
            await engine.tick_position(KEY_A)
            remaining_after_ladder = position.remaining_quantity
            feed.prices[MINT_A] = 0.4
            result = await engine.tick_position(KEY_A)
            return remaining_after_ladder, result, submitter

        remaining, result, submitter = asyncio.run(scenario())
        assert remaining == 750
        assert result == TickResult.CLOSED
        assert submitter.sell_sizes == [250, 750]

    def test_time_based_exit(self):
        clock = FakeClock(0.0)

        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 1.0}, clock=clock)
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TimeBased(3_600_000)])
            clock.now = 3599.9
            early = await engine.tick_position(KEY_A)
            clock.now = 3600.0
            due = await engine.tick_position(KEY_A)
            return early, due, submitter

        early, due, submitter = asyncio.run(scenario())
        assert early == TickResult.NO_DECISION
        assert due == TickResult.CLOSED
        assert submitter.sell_sizes == [1000]

    def test_ladder_level_rounding_to_zero_is_retired_and_reported(self):
        async def scenario():
            engine, _, _, submitter, sink = build_engine({MINT_A: 2.0})
            position = engine.open_position(MINT_A, WALLET, 1.0, 3, [PartialSellLevel(2.0, 0.1), StopLoss(0.5)])
            result = await engine.tick_position(KEY_A)
            again = await engine.tick_position(KEY_A)
            await engine.drain_alerts()
            return engine, position, result, again, submitter, sink

        engine, position, result, again, submitter, sink = asyncio.run(scenario())
        assert result == TickResult.RETIRED
        assert again == TickResult.NO_DECISION
        assert submitter.calls == []
        assert position.remaining_quantity == 3
        assert position.triggers == [StopLoss(0.5)]
        assert engine.stats.triggers_fired == 1
        fired = [e for e in sink.events if e.kind is EventKind.TRIGGER_FIRED]
        assert len(fired) == 1
        assert fired[0].details == {"size": 0}


class TestFailures:
    """Failures leave the position untouched or isolate it"""

    def test_slippage_exceeded_leaves_position_unchanged(self):
        async def scenario():
            engine, _, _, submitter, sink = build_engine({MINT_A: 2.0})
            position = engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            submitter.errors.append(slippage_error())
            failed = await engine.tick_position(KEY_A)
            snapshot = (position.remaining_quantity, list(position.triggers), len(position.trades))
            retried = await engine.tick_position(KEY_A)
            await engine.drain_alerts()
            return engine, failed, snapshot, retried, sink

        engine, failed, snapshot, retried, sink = asyncio.run(scenario())
        assert failed == TickResult.EXECUTION_FAILED
        assert snapshot == (1000, [TakeProfit(2.0)], 0)
        assert retried == TickResult.CLOSED
        assert engine.stats.execution_failures == 1
        failure = next(e for e in sink.events if e.kind is EventKind.EXECUTION_FAILED)
        assert "SLIPPAGE_EXCEEDED" in failure.reason

    def test_feed_miss_skips_tick(self):
        async def scenario():
            engine, feed, _, submitter, _ = build_engine({MINT_A: 1.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            del feed.prices[MINT_A]
            first = await engine.tick_position(KEY_A)
            second = await engine.tick_position(KEY_A)
            misses = engine.feed_misses[KEY_A]
            feed.prices[MINT_A] = 1.1
            await engine.tick_position(KEY_A)
            return first, second, misses, engine, submitter

        first, second, misses, engine, submitter = asyncio.run(scenario())
        assert first == second == TickResult.FEED_UNAVAILABLE
        assert misses == 2
        assert engine.feed_misses[KEY_A] == 0
        assert engine.stats.feed_misses == 2
        assert submitter.calls == []

    def test_unknown_venue_defers_sell(self):
        async def scenario():
            engine, _, resolver, submitter, _ = build_engine({MINT_A: 3.0})
            position = engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            resolver.venue = None
            result = await engine.tick_position(KEY_A)
            return result, position, submitter

        result, position, submitter = asyncio.run(scenario())
        assert result == TickResult.RESOLUTION_UNKNOWN
        assert position.remaining_quantity == 1000
        assert position.triggers == [TakeProfit(2.0)]
        assert submitter.calls == []

    def test_oversell_freezes_only_that_position(self):
        async def scenario():
            engine, _, _, submitter, sink = build_engine({MINT_A: 2.0, MINT_B: 1.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            engine.open_position(MINT_B, WALLET, 1.0, 500, [TakeProfit(3.0)])
            submitter.fill_size = 5000
            result = await engine.tick_position(KEY_A)
            after = await engine.tick_position(KEY_A)
            other = await engine.tick_position(KEY_B)
            await engine.drain_alerts()
            return engine, result, after, other, sink

        engine, result, after, other, sink = asyncio.run(scenario())
        assert result == TickResult.FROZEN
        assert after == TickResult.NOT_FOUND
        assert other == TickResult.NO_DECISION
        frozen = engine.store.frozen()
        assert [p.mint for p in frozen] == [MINT_A]
        assert frozen[0].remaining_quantity == 1000
        assert EventKind.POSITION_FROZEN in sink.kinds()

    def test_failing_alert_sink_does_not_break_pipeline(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 2.0}, sink=RecordingSink(fail=True))
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            result = await engine.tick_position(KEY_A)
            await engine.drain_alerts()
            return result

        assert asyncio.run(scenario()) == TickResult.CLOSED


class TestConcurrency:
    """Different positions run independently; one position never races itself"""

    def test_slow_sell_does_not_block_other_position(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 2.0, MINT_B: 2.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            engine.open_position(MINT_B, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            gate = submitter.hold(MINT_A)

            slow = asyncio.create_task(engine.tick_position(KEY_A))
            await submitter.entered[MINT_A].wait()
            fast = await asyncio.wait_for(engine.tick_position(KEY_B), timeout=1.0)
            a_pending = not slow.done()
            gate.set()
            return fast, a_pending, await slow

        fast, a_pending, slow = asyncio.run(scenario())
        assert fast == TickResult.CLOSED
        assert a_pending
        assert slow == TickResult.CLOSED

    def test_same_position_ticks_are_serialized(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 2.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            gate = submitter.hold(MINT_A)

            first = asyncio.create_task(engine.tick_position(KEY_A))
            await submitter.entered[MINT_A].wait()
            second = asyncio.create_task(engine.tick_position(KEY_A))
            await asyncio.sleep(0.01)
            second_waiting = not second.done()
            gate.set()
            return await first, await second, second_waiting, submitter

        first, second, second_waiting, submitter = asyncio.run(scenario())
        assert second_waiting
        assert first == TickResult.SOLD
        assert second == TickResult.NO_DECISION
        assert submitter.sell_sizes == [250]

    def test_modify_triggers_waits_for_in_flight_sell(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 2.0})
            position = engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            gate = submitter.hold(MINT_A)

            tick = asyncio.create_task(engine.tick_position(KEY_A))
            await submitter.entered[MINT_A].wait()
            modify = asyncio.create_task(engine.modify_triggers(MINT_A, WALLET, [StopLoss(0.3)]))
            await asyncio.sleep(0.01)
            triggers_during_sell = list(position.triggers)
            gate.set()
            await tick
            await modify
            return triggers_during_sell, position

        during, position = asyncio.run(scenario())
        assert during == LADDER
        assert position.triggers == [StopLoss(0.3)]
        assert position.remaining_quantity == 750

    def test_cancelled_tick_still_records_confirmed_sell(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 2.0})
            position = engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            gate = submitter.hold(MINT_A)

            tick = asyncio.create_task(engine.tick_position(KEY_A))
            await submitter.entered[MINT_A].wait()
            tick.cancel()
            await asyncio.sleep(0)
            gate.set()
            with pytest.raises(asyncio.CancelledError):
                await tick
            return position

        position = asyncio.run(scenario())
        assert position.remaining_quantity == 750
        assert PartialSellLevel(2.0, 0.25) not in position.triggers

    def test_price_timeout_covers_wait_for_request_slot(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine(
                {MINT_A: 2.0, MINT_B: 1.0},
                price_timeout_sec=0.05,
                max_concurrent_requests=1,
            )
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            engine.open_position(MINT_B, WALLET, 1.0, 1000, [TakeProfit(3.0)])
            gate = submitter.hold(MINT_A)

            slow = asyncio.create_task(engine.tick_position(KEY_A))
            await submitter.entered[MINT_A].wait()
            starved = await asyncio.wait_for(engine.tick_position(KEY_B), timeout=1.0)
            gate.set()
            return engine, starved, await slow

        engine, starved, slow = asyncio.run(scenario())
        assert starved == TickResult.FEED_UNAVAILABLE
        assert engine.feed_misses[KEY_B] == 1
        assert slow == TickResult.CLOSED


class TestOperations:
    """User-facing operations"""

    def test_buy_and_open_uses_confirmed_fill(self):
        async def scenario():
            engine, _, _, submitter, sink = build_engine({MINT_A: 0.002})
            submitter.fill_price = 0.0021
            position = await engine.buy_and_open(MINT_A, WALLET, 1_000_000)
            await engine.drain_alerts()
            return position, sink

        position, sink = asyncio.run(scenario())
        assert position.entry_price == pytest.approx(0.0021)
        assert position.initial_quantity == 1_000_000
        assert position.trades[0].side is Side.BUY
        assert len(position.triggers) == 5
        assert sink.kinds() == [EventKind.POSITION_OPENED]

    def test_duplicate_position_rejected(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 1.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            with pytest.raises(DuplicatePosition):
                await engine.buy_and_open(MINT_A, WALLET, 1000)
            return submitter

        submitter = asyncio.run(scenario())
        assert submitter.calls == []

    def test_concurrent_buy_for_same_key_rejected(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 1.0})
            gate = submitter.hold(MINT_A)
            first = asyncio.create_task(engine.buy_and_open(MINT_A, WALLET, 1000))
            await submitter.entered[MINT_A].wait()
            with pytest.raises(DuplicatePosition):
                await engine.buy_and_open(MINT_A, WALLET, 1000)
            gate.set()
            return engine, await first, submitter

        engine, position, submitter = asyncio.run(scenario())
        assert submitter.calls == [(MINT_A, Side.BUY, 1000)]
        assert engine.store.get(MINT_A, WALLET) is position

    def test_failed_buy_releases_key(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 1.0})
            submitter.errors.append(slippage_error())
            with pytest.raises(ExecutionError):
                await engine.buy_and_open(MINT_A, WALLET, 1000)
            return await engine.buy_and_open(MINT_A, WALLET, 1000)

        position = asyncio.run(scenario())
        assert position.initial_quantity == 1000

    def test_force_sell_fraction_of_initial(self):
        async def scenario():
            engine, _, _, submitter, sink = build_engine({MINT_A: 1.5})
            position = engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            first = await engine.force_sell(MINT_A, WALLET, 0.4)
            remaining = position.remaining_quantity
            second = await engine.force_sell(MINT_A, WALLET, 1.0)
            await engine.drain_alerts()
            return first, remaining, second, submitter, sink

        first, remaining, second, submitter, sink = asyncio.run(scenario())
        assert first == TickResult.SOLD
        assert remaining == 600
        assert second == TickResult.CLOSED
        assert submitter.sell_sizes == [400, 600]
        manual = [e for e in sink.events if e.kind is EventKind.TRIGGER_FIRED]
        assert all(e.reason == "MANUAL" for e in manual)

    def test_unfreeze_returns_position_to_evaluation(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 2.0})
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            submitter.fill_size = 9999
            await engine.tick_position(KEY_A)
            submitter.fill_size = None
            engine.unfreeze(MINT_A, WALLET)
            return await engine.tick_position(KEY_A)

        assert asyncio.run(scenario()) == TickResult.CLOSED

    def test_snapshot_written_after_sell(self, tmp_path):
        snapshots = PositionSnapshotStore(tmp_path / "positions.json")

        async def scenario():
            engine, _, _, _, _ = build_engine({MINT_A: 2.0}, snapshots=snapshots)
            engine.open_position(MINT_A, WALLET, 1.0, 1000, LADDER)
            await engine.tick_position(KEY_A)

        asyncio.run(scenario())
        restored = snapshots.load()
        assert len(restored) == 1
        assert restored[0].remaining_quantity == 750
        assert restored[0].peak_price == 2.0
        assert restored[0].ladder() == LADDER[1:]


class TestLifecycle:
    """Scheduled loop and state transitions"""

    def test_running_engine_closes_position(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 2.0}, clock=time.time, interval_sec=0.02)
            await engine.start()
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            for _ in range(100):
                if KEY_A not in engine.store:
                    break
                await asyncio.sleep(0.01)
            await engine.stop()
            return engine, submitter

        engine, submitter = asyncio.run(scenario())
        assert submitter.sell_sizes == [1000]
        assert engine.state is EngineState.STOPPED
        assert engine.status()["running_tasks"] == 0

    def test_pause_keeps_positions_and_resume_restarts_tasks(self):
        async def scenario():
            engine, _, _, submitter, _ = build_engine({MINT_A: 1.0}, clock=time.time, interval_sec=60.0)
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            await engine.start()
            running = engine.status()["running_tasks"]
            await engine.pause()
            paused = engine.status()
            with pytest.raises(StateException):
                await engine.pause()
            await engine.resume()
            resumed = engine.status()["running_tasks"]
            await engine.stop()
            return running, paused, resumed

        running, paused, resumed = asyncio.run(scenario())
        assert running == 1
        assert paused["state"] == "PAUSED"
        assert paused["open_positions"] == 1
        assert paused["running_tasks"] == 0
        assert resumed == 1

    def test_resume_keeps_original_tick_grid(self):
        clock = FakeClock(0.0)
        delays = []

        async def parked_sleep(delay):
            delays.append(delay)
            await asyncio.Event().wait()

        async def scenario():
            engine, _, _, _, _ = build_engine({MINT_A: 1.0}, clock=clock, sleep=parked_sleep, interval_sec=30.0)
            engine.open_position(MINT_A, WALLET, 1.0, 1000, [TakeProfit(2.0)])
            await engine.start()
            await asyncio.sleep(0)
            clock.now = 45.0
            await engine.pause()
            clock.now = 52.0
            await engine.resume()
            await asyncio.sleep(0)
            await engine.stop()

        asyncio.run(scenario())
        # Next boundary after 52 is 60 on the grid started at 0, not 52 + 30
        assert delays == [pytest.approx(30.0), pytest.approx(8.0)]

    def test_resume_requires_pause(self):
        async def scenario():
            engine, _, _, _, _ = build_engine()
            with pytest.raises(StateException):
                await engine.resume()

        asyncio.run(scenario())
