"""Config package"""
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from .settings import Settings
from .engine_config import (
    AlertConfig,
    EngineConfig,
    EngineConfigManager,
    ExecutionConfig,
    PollingConfig,
    TriggerDefaults,
)

__all__ = [
    "AlertConfig",
    "EngineConfig",
    "EngineConfigManager",
    "ExecutionConfig",
    "PollingConfig",
    "Settings",
    "TriggerDefaults",
]
