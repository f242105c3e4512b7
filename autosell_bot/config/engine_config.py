"""
Engine Configuration Manager

Provides polling, execution, default trigger and alert parameters via a
YAML/JSON file.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from autosell_bot.core.models import Trigger, trigger_from_dict
from autosell_bot.exceptions import ConfigurationException

logger = logging.getLogger(__name__)


@dataclass
class PollingConfig:
    """Tick cadence and provider limits"""
    interval_sec: float = 30.0
    price_timeout_sec: float = 10.0
    max_concurrent_requests: int = 8  # Outstanding feed/venue/execution calls across all positions
    requests_per_second: float = 5.0


@dataclass
class ExecutionConfig:
    """Swap submission settings"""
    slippage_bps: int = 100  # 1%
    priority_fee_lamports: int = 5000
    use_bundle: bool = False  # Jito-style bundle for priority inclusion
    max_retries: int = 3
    retry_delay_sec: float = 0.5
    retry_backoff: float = 2.0
    timeout_sec: float = 45.0


def _default_triggers() -> List[Dict[str, Any]]:
    return [
        {"type": "PARTIAL_SELL", "multiplier": 2.0, "fraction": 0.25},
        {"type": "PARTIAL_SELL", "multiplier": 5.0, "fraction": 0.25},
        {"type": "PARTIAL_SELL", "multiplier": 10.0, "fraction": 0.5},
        {"type": "STOP_LOSS", "percent": 0.5},
        {"type": "TRAILING_STOP", "percent": 0.2},
    ]


@dataclass
class TriggerDefaults:
    """Trigger set attached to positions opened without an explicit one"""
    triggers: List[Dict[str, Any]] = field(default_factory=_default_triggers)

    def build(self) -> List[Trigger]:
        return [trigger_from_dict(t) for t in self.triggers]


@dataclass
class AlertConfig:
    """Alert dispatch config"""
    telegram_enabled: bool = False
    notify_fills: bool = True
    notify_failures: bool = True
    admin_ids: List[str] = field(default_factory=list)


@dataclass
class EngineConfig:
    """Complete engine configuration"""
    version: str = "1.0"

    polling: PollingConfig = field(default_factory=PollingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    defaults: TriggerDefaults = field(default_factory=TriggerDefaults)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    persist_positions: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create from dictionary"""
        try:
            return cls(
                version=data.get("version", "1.0"),
                polling=PollingConfig(**data.get("polling", {})),
                execution=ExecutionConfig(**data.get("execution", {})),
                defaults=TriggerDefaults(**data.get("defaults", {})),
                alerts=AlertConfig(**data.get("alerts", {})),
                persist_positions=data.get("persist_positions", True),
            )
        except TypeError as e:
            raise ConfigurationException("unknown config key", error=str(e)) from e


class EngineConfigManager:
    """
    Engine configuration manager.

    Features:
    - Load from YAML or JSON
    - Save configuration
    - Validation
    - Default fallback

    Usage:
        config_manager = EngineConfigManager("config/engine.yaml")
        config = config_manager.get_config()

        interval = config.polling.interval_sec
    """

    DEFAULT_CONFIG_PATH = "config/engine.yaml"

    def __init__(self, config_path: Optional[str] = None, create: bool = True):
        """
        Initialize config manager.

        Args:
            config_path: Path to config file
            create: Write the default config when the file is missing
        """
        self.config_path = Path(config_path or self.DEFAULT_CONFIG_PATH)
        self._config: Optional[EngineConfig] = None
        self._create = create

        self._load_or_create()

    def _load_or_create(self):
        """Load existing config or create default"""
        if self.config_path.exists():
            self._config = self._load_from_file()
            logger.info(f"Engine config loaded from {self.config_path}")
        else:
            self._config = EngineConfig()
            if self._create:
                self.save_config(self._config)
                logger.info(f"Default engine config created at {self.config_path}")

    def _load_from_file(self) -> EngineConfig:
        """Load config from file. Unreadable files fall back to defaults; bad keys raise."""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                if self.config_path.suffix in ['.yaml', '.yml']:
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config: {e}")
            return EngineConfig()

        return EngineConfig.from_dict(data or {})

    def save_config(self, config: Optional[EngineConfig] = None):
        """Save config to file"""
        config = config or self._config
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = config.to_dict()
        with open(self.config_path, 'w', encoding='utf-8') as f:
            if self.config_path.suffix in ['.yaml', '.yml']:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            else:
                json.dump(data, f, indent=2, ensure_ascii=False)

        logger.info(f"Engine config saved to {self.config_path}")

    def get_config(self) -> EngineConfig:
        """Get current config"""
        if self._config is None:
            self._config = EngineConfig()
        return self._config

    def reload(self) -> bool:
        """Reload config from file"""
        if self.config_path.exists():
            self._config = self._load_from_file()
            logger.info("Engine config reloaded")
            return True
        return False

    def validate(self) -> List[str]:
        """Validate current config, return list of errors"""
        errors = []
        config = self.get_config()

        # Polling
        if config.polling.interval_sec <= 0:
            errors.append("interval_sec must be > 0")

        if config.polling.price_timeout_sec <= 0:
            errors.append("price_timeout_sec must be > 0")

        if config.polling.max_concurrent_requests < 1:
            errors.append("max_concurrent_requests must be >= 1")

        # Execution
        if config.execution.slippage_bps <= 0 or config.execution.slippage_bps > 10_000:
            errors.append("slippage_bps must be between 1 and 10000")

        if config.execution.max_retries < 1:
            errors.append("max_retries must be >= 1")

        if config.execution.timeout_sec <= 0:
            errors.append("timeout_sec must be > 0")

        # Default triggers
        for raw in config.defaults.triggers:
            try:
                trigger_from_dict(raw)
            except ConfigurationException as e:
                errors.append(f"invalid default trigger {raw}: {e}")

        return errors
