from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

from autosell_bot.core.models import Position
from autosell_bot.exceptions import ConfigurationException

if TYPE_CHECKING:
    from autosell_bot.core.position_store import PositionStore


class PositionSnapshotStore:
    """JSON snapshot of every open and frozen position, keyed by (mint, wallet)."""

    def __init__(self, path: str | Path) -> None:
        self.snapshot_path = Path(path)
        self.logger = logging.getLogger("autosell_bot.persistence")

    def save(self, store: "PositionStore") -> None:
        payload = {
            "ts": time.time(),
            "open_positions": [p.to_dict() for p in store.all()],
            "frozen_positions": [p.to_dict() for p in store.frozen()],
        }
        self._write_snapshot(payload)

    def _write_snapshot(self, payload: dict) -> None:
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.snapshot_path.with_suffix(self.snapshot_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.snapshot_path)

    def load(self) -> list[Position]:
        """Load positions from snapshot file. Returns empty list if file doesn't exist or is invalid."""
        if not self.snapshot_path.exists():
            self.logger.info("No positions snapshot found, starting fresh")
            return []

        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            self.logger.error("Failed to load positions snapshot: %s", e)
            return []

        records = list(data.get("open_positions", [])) + list(data.get("frozen_positions", []))
        if not records:
            self.logger.info("Positions snapshot is empty")
            return []

        positions: list[Position] = []
        for record in records:
            try:
                position = Position.from_dict(record)
            except (KeyError, TypeError, ValueError, ConfigurationException) as e:
                self.logger.warning("Failed to restore position %s: %s", record.get("mint", "?"), e)
                continue
            positions.append(position)
            self.logger.info(
                "Restored position: %s wallet=%s remaining=%d/%d peak=%.10g triggers=%d%s",
                position.mint[:8],
                position.wallet[:8],
                position.remaining_quantity,
                position.initial_quantity,
                position.peak_price,
                len(position.triggers),
                " (FROZEN)" if position.frozen else "",
            )

        self.logger.info("Restored %d positions from snapshot", len(positions))
        return positions

    def clear_snapshot(self) -> None:
        """Clear the positions snapshot file."""
        if self.snapshot_path.exists():
            self._write_snapshot({"ts": 0, "open_positions": [], "frozen_positions": []})
            self.logger.info("Positions snapshot cleared")
