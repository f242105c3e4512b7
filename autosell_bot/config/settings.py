"""Environment-backed settings (credentials, endpoints, paths)."""
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Settings:
    # Credentials & endpoints
    RPC_URL: str = ""
    WALLET_ADDRESS: str = ""
    JUPITER_API_KEY: str = ""
    JUPITER_PRICE_API_BASE: str = "https://lite-api.jup.ag/price/v3"
    DEXSCREENER_API_BASE: str = "https://api.dexscreener.com/latest/dex"
    PUMPFUN_API_BASE: str = "https://frontend-api-v3.pump.fun"
    PUMPPORTAL_WS_URL: str = "wss://pumpportal.fun/api/data"
    SWAP_API_URL: str = ""
    SWAP_API_KEY: str = ""

    # Telegram
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_CHAT_ID: str = ""
    TELEGRAM_ENABLED: bool = False

    # Modes
    PAPER_TRADING_MODE: bool = True  # Safe default
    SIM_SLIPPAGE_PCT: float = 0.02
    SIM_FEE_BPS: float = 100.0

    # Runtime
    API_TIMEOUT_SEC: float = 10.0
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"
    POSITION_SNAPSHOT_PATH: str = "data/positions.json"
    ENGINE_CONFIG_PATH: str = "config/engine.yaml"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            RPC_URL=os.getenv("RPC_URL", defaults.RPC_URL),
            WALLET_ADDRESS=os.getenv("WALLET_ADDRESS", defaults.WALLET_ADDRESS),
            JUPITER_API_KEY=os.getenv("JUPITER_API_KEY", defaults.JUPITER_API_KEY),
            JUPITER_PRICE_API_BASE=os.getenv("JUPITER_PRICE_API_BASE", defaults.JUPITER_PRICE_API_BASE),
            DEXSCREENER_API_BASE=os.getenv("DEXSCREENER_API_BASE", defaults.DEXSCREENER_API_BASE),
            PUMPFUN_API_BASE=os.getenv("PUMPFUN_API_BASE", defaults.PUMPFUN_API_BASE),
            PUMPPORTAL_WS_URL=os.getenv("PUMPPORTAL_WS_URL", defaults.PUMPPORTAL_WS_URL),
            SWAP_API_URL=os.getenv("SWAP_API_URL", defaults.SWAP_API_URL),
            SWAP_API_KEY=os.getenv("SWAP_API_KEY", defaults.SWAP_API_KEY),
            TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", defaults.TELEGRAM_BOT_TOKEN),
            TELEGRAM_CHAT_ID=os.getenv("TELEGRAM_CHAT_ID", defaults.TELEGRAM_CHAT_ID),
            TELEGRAM_ENABLED=_env_bool("TELEGRAM_ENABLED", "False"),
            # Default to True for safety if env var missing
            PAPER_TRADING_MODE=_env_bool("PAPER_TRADING_MODE", "True"),
            SIM_SLIPPAGE_PCT=float(os.getenv("SIM_SLIPPAGE_PCT", str(defaults.SIM_SLIPPAGE_PCT))),
            SIM_FEE_BPS=float(os.getenv("SIM_FEE_BPS", str(defaults.SIM_FEE_BPS))),
            API_TIMEOUT_SEC=float(os.getenv("API_TIMEOUT_SEC", str(defaults.API_TIMEOUT_SEC))),
            LOG_DIR=os.getenv("LOG_DIR", defaults.LOG_DIR),
            LOG_LEVEL=os.getenv("LOG_LEVEL", defaults.LOG_LEVEL),
            POSITION_SNAPSHOT_PATH=os.getenv("POSITION_SNAPSHOT_PATH", defaults.POSITION_SNAPSHOT_PATH),
            ENGINE_CONFIG_PATH=os.getenv("ENGINE_CONFIG_PATH", defaults.ENGINE_CONFIG_PATH),
        )
