import argparse
import asyncio
import logging
import platform
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, List, Optional

from autosell_bot.config import EngineConfig, EngineConfigManager, Settings
from autosell_bot.core.alerts import FanoutAlertSink, LoggingAlertSink, TelegramAlertSink
from autosell_bot.core.engine import AutoSellEngine
from autosell_bot.core.persistence import PositionSnapshotStore
from autosell_bot.core.pnl import PnLLedger
from autosell_bot.core.position_store import PositionStore
from autosell_bot.core.price_feed import JupiterPriceFeed
from autosell_bot.core.trade_executor import HttpSwapSubmitter, PaperSubmitter, TradeExecutor
from autosell_bot.core.venue_resolver import MigrationListener, VenueResolver
from autosell_bot.exceptions import BotException
from autosell_bot.logger import setup_logging

logger = logging.getLogger("autosell_bot.main")


@dataclass
class Runtime:
    engine: AutoSellEngine
    resolver: VenueResolver
    telegram: TelegramAlertSink
    closeables: List[Any] = field(default_factory=list)

    async def close(self) -> None:
        await self.telegram.teardown()
        for closeable in self.closeables:
            await closeable.close()


def build_runtime(settings: Settings, config: EngineConfig) -> Runtime:
    store = PositionStore()
    snapshots = PositionSnapshotStore(settings.POSITION_SNAPSHOT_PATH) if config.persist_positions else None
    if snapshots:
        store.restore(snapshots.load())

    price_feed = JupiterPriceFeed(settings, requests_per_second=config.polling.requests_per_second)
    resolver = VenueResolver(settings)
    closeables: List[Any] = [price_feed, resolver]

    if settings.PAPER_TRADING_MODE:
        submitter = PaperSubmitter(
            price_feed,
            slippage_pct=settings.SIM_SLIPPAGE_PCT,
            fee_bps=settings.SIM_FEE_BPS,
        )
    else:
        if not settings.SWAP_API_URL:
            raise BotException("SWAP_API_URL is required in live mode")
        submitter = HttpSwapSubmitter(settings)
        closeables.append(submitter)

    telegram = TelegramAlertSink(settings, config.alerts)
    telegram.load()
    engine = AutoSellEngine(
        config,
        store,
        price_feed,
        resolver,
        TradeExecutor(submitter, config.execution),
        alert_sink=FanoutAlertSink([LoggingAlertSink(), telegram]),
        snapshots=snapshots,
        ledger=PnLLedger(),
    )
    return Runtime(engine=engine, resolver=resolver, telegram=telegram, closeables=closeables)


async def run(settings: Settings, config: EngineConfig) -> None:
    runtime = build_runtime(settings, config)
    engine = runtime.engine
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("🛑 [SHUTDOWN] Received signal %s...", sig)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if platform.system() != "Windows":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    listener = MigrationListener(settings, runtime.resolver, on_migration=engine.handle_migration)
    listener_task = asyncio.create_task(listener.start())
    try:
        await engine.start()
        await shutdown_event.wait()
    finally:
        logger.info("Initiating graceful shutdown...")
        listener.stop()
        listener_task.cancel()
        await asyncio.gather(listener_task, return_exceptions=True)
        await engine.stop()
        await runtime.close()
        logger.info("Shutdown complete")


async def buy(settings: Settings, config: EngineConfig, mint: str, size: int, wallet: Optional[str]) -> None:
    runtime = build_runtime(settings, config)
    try:
        position = await runtime.engine.buy_and_open(mint, wallet or settings.WALLET_ADDRESS, size)
        await runtime.engine.drain_alerts()
        print(f"Opened {position.mint} qty={position.initial_quantity} entry={position.entry_price:.10g}")
    finally:
        await runtime.close()


def status(settings: Settings) -> None:
    positions = PositionSnapshotStore(settings.POSITION_SNAPSHOT_PATH).load()
    if not positions:
        print("No open positions")
        return
    ledger = PnLLedger()
    for position in positions:
        snap = ledger.snapshot(position)
        flag = f" FROZEN ({position.frozen_reason})" if position.frozen else ""
        print(
            f"{position.mint} wallet={position.wallet[:8]} "
            f"remaining={position.remaining_quantity}/{position.initial_quantity} "
            f"entry={position.entry_price:.10g} peak={position.peak_price:.10g} "
            f"realized={snap.realized:+.6g} unrealized={snap.unrealized:+.6g}{flag}"
        )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="autosell-bot", description="Position auto-sell engine")
    parser.add_argument("--config", help="Engine config file (YAML or JSON)")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--paper", dest="paper", action="store_true", default=None, help="Simulated fills")
    mode.add_argument("--live", dest="paper", action="store_false", help="Submit through the swap service")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Restore positions and run the engine")
    buy_parser = sub.add_parser("buy", help="Buy a token and start watching it")
    buy_parser.add_argument("mint")
    buy_parser.add_argument("size", type=int, help="Token quantity in base units")
    buy_parser.add_argument("--wallet", help="Defaults to WALLET_ADDRESS")
    sub.add_parser("status", help="Print the positions snapshot")
    sub.add_parser("init-config", help="Write the default engine config")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    if args.paper is not None:
        settings.PAPER_TRADING_MODE = args.paper
    config_path = args.config or settings.ENGINE_CONFIG_PATH

    if args.command == "init-config":
        EngineConfigManager(config_path, create=False).save_config(EngineConfig())
        print(f"Default config written to {config_path}")
        return 0
    if args.command == "status":
        status(settings)
        return 0

    setup_logging(settings)
    try:
        manager = EngineConfigManager(config_path)
        errors = manager.validate()
        if errors:
            for error in errors:
                logger.error("Config error: %s", error)
            return 1
        config = manager.get_config()

        if args.command == "run":
            asyncio.run(run(settings, config))
        elif args.command == "buy":
            asyncio.run(buy(settings, config, args.mint, args.size, args.wallet))
    except BotException as e:
        logger.error("🔥 %s", e)
        return 1
    except KeyboardInterrupt:
        print("👋 Bot stopped by user.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
