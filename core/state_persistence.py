"""
State Persistence
=================

JSON document store for engine state.

Documents (one file each, replaced wholesale on write):
- watchlist.json: current WatchlistSnapshot
- trades.json: live trades keyed by pair (TradeBookSnapshot)
- trade_history.json: closed trade records plus summary stats
- blacklist.json: symbols never to trade

Features:
- Atomic writes (temp file + fsync + rename)
- Backup rotation (5 max)
- Fallback to the newest readable backup on corrupt JSON
- Thread-safe writes
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from core.pair_screener import WatchlistSnapshot
from core.trade_state_machine import TradeBookSnapshot, TradeHistoryRecord, history_stats


logger = logging.getLogger(__name__)


@dataclass
class StatePersistenceConfig:
    """Configuration for state persistence."""
    state_dir: str = "state"
    watchlist_file: str = "watchlist.json"
    trades_file: str = "trades.json"
    history_file: str = "trade_history.json"
    blacklist_file: str = "blacklist.json"
    max_backups: int = 5


class StatePersistence:
    """
    State persistence manager.

    Handles:
    - Atomic file writes (temp + rename)
    - Backup rotation
    - Loading with backup fallback
    """

    def __init__(self, config: StatePersistenceConfig | None = None):
        self._config = config or StatePersistenceConfig()
        self._state_dir = Path(self._config.state_dir)

        self._state_dir.mkdir(parents=True, exist_ok=True)

        self._last_save_time: datetime | None = None

        # Thread safety for concurrent save operations
        self._lock = threading.RLock()

        logger.info(f"StatePersistence initialized at {self._state_dir}")

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _path(self, file_name: str) -> Path:
        return self._state_dir / file_name

    # =========================================================================
    # DOCUMENT I/O
    # =========================================================================

    def _write_document(self, file_name: str, document: dict[str, Any]) -> bool:
        """
        Write a whole document atomically.

        Returns:
            True if save succeeded
        """
        path = self._path(file_name)
        temp_path = path.with_suffix(".tmp")
        with self._lock:
            try:
                document = {**document, "persisted_at": datetime.now(timezone.utc).isoformat()}
                json_data = json.dumps(document, indent=2, default=str)

                with open(temp_path, "w", encoding="utf-8") as f:
                    f.write(json_data)
                    f.flush()
                    os.fsync(f.fileno())

                if path.exists():
                    self._rotate_backups(path)

                temp_path.replace(path)

                self._last_save_time = datetime.now(timezone.utc)
                logger.debug(f"Saved {path}")
                return True

            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save {path}: {e}")
                if temp_path.exists():
                    try:
                        temp_path.unlink()
                    except OSError as cleanup_error:
                        logger.debug(f"Could not remove {temp_path}: {cleanup_error}")
                return False

    def _read_document(self, file_name: str) -> dict[str, Any] | None:
        """Read a document, falling back to backups when it is corrupt."""
        path = self._path(file_name)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in {path}: {e}")
            return self._load_from_backup(path)
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            return self._load_from_backup(path)

    def _load_from_backup(self, path: Path) -> dict[str, Any] | None:
        """Try to load the most recent readable backup."""
        for i in range(1, self._config.max_backups + 1):
            backup_path = path.with_suffix(f".bak{i}")
            if backup_path.exists():
                try:
                    with open(backup_path, "r", encoding="utf-8") as f:
                        data = json.load(f)
                    logger.warning(f"Loaded {path.name} from backup {backup_path}")
                    return data
                except (OSError, json.JSONDecodeError) as e:
                    logger.debug(f"Failed to load backup {backup_path}: {e}")
                    continue
        return None

    def _rotate_backups(self, path: Path) -> None:
        """Rotate backup files."""
        try:
            for i in range(self._config.max_backups, 1, -1):
                older = path.with_suffix(f".bak{i-1}")
                newer = path.with_suffix(f".bak{i}")
                if older.exists():
                    shutil.move(str(older), str(newer))

            if path.exists():
                shutil.copy2(str(path), str(path.with_suffix(".bak1")))

        except OSError as e:
            logger.warning(f"Failed to rotate backups for {path}: {e}")

    # =========================================================================
    # WATCHLIST
    # =========================================================================

    def save_watchlist(self, snapshot: WatchlistSnapshot) -> bool:
        return self._write_document(self._config.watchlist_file, snapshot.to_dict())

    def load_watchlist(self) -> WatchlistSnapshot:
        """Current watchlist; empty snapshot if none was saved."""
        data = self._read_document(self._config.watchlist_file)
        if data is None:
            logger.info("No persisted watchlist found")
            return WatchlistSnapshot.empty()
        return WatchlistSnapshot.from_dict(data)

    # =========================================================================
    # LIVE TRADES
    # =========================================================================

    def save_trades(self, snapshot: TradeBookSnapshot) -> bool:
        return self._write_document(self._config.trades_file, snapshot.to_dict())

    def load_trades(self) -> TradeBookSnapshot:
        """Live trades; empty snapshot if none were saved."""
        data = self._read_document(self._config.trades_file)
        if data is None:
            return TradeBookSnapshot()
        snapshot = TradeBookSnapshot.from_dict(data)
        logger.info(f"Loaded {len(snapshot)} live trades (v{snapshot.version})")
        return snapshot

    # =========================================================================
    # TRADE HISTORY
    # =========================================================================

    def load_history(self) -> list[TradeHistoryRecord]:
        data = self._read_document(self._config.history_file)
        if data is None:
            return []
        return [TradeHistoryRecord.from_dict(r) for r in data.get("records", [])]

    def append_history(self, records: list[TradeHistoryRecord]) -> bool:
        """Add closed trades to the history document."""
        if not records:
            return True
        with self._lock:
            history = self.load_history() + list(records)
            return self._write_document(self._config.history_file, {
                "records": [r.to_dict() for r in history],
                "stats": history_stats(history),
            })

    def history_stats(self) -> dict[str, Any]:
        return history_stats(self.load_history())

    # =========================================================================
    # BLACKLIST
    # =========================================================================

    def load_blacklist(self) -> list[str]:
        data = self._read_document(self._config.blacklist_file)
        if data is None:
            return []
        return sorted(data.get("symbols", []))

    def save_blacklist(self, symbols: list[str]) -> bool:
        unique = sorted({s.upper() for s in symbols})
        return self._write_document(self._config.blacklist_file, {"symbols": unique})

    def add_to_blacklist(self, symbol: str) -> bool:
        with self._lock:
            return self.save_blacklist(self.load_blacklist() + [symbol])

    def remove_from_blacklist(self, symbol: str) -> bool:
        with self._lock:
            remaining = [s for s in self.load_blacklist() if s != symbol.upper()]
            return self.save_blacklist(remaining)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def get_state_info(self) -> dict[str, Any]:
        """Get information about persisted documents."""
        result: dict[str, Any] = {
            "state_dir": str(self._state_dir),
            "last_save": self._last_save_time.isoformat() if self._last_save_time else None,
            "documents": {},
        }
        for file_name in (
            self._config.watchlist_file,
            self._config.trades_file,
            self._config.history_file,
            self._config.blacklist_file,
        ):
            path = self._path(file_name)
            info: dict[str, Any] = {"exists": path.exists()}
            if path.exists():
                stat = path.stat()
                info["size_bytes"] = stat.st_size
                info["modified"] = datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat()
                info["backups"] = [
                    path.with_suffix(f".bak{i}").name
                    for i in range(1, self._config.max_backups + 1)
                    if path.with_suffix(f".bak{i}").exists()
                ]
            result["documents"][file_name] = info
        return result


def create_state_persistence(config: dict[str, Any] | None = None) -> StatePersistence:
    """Factory function to create StatePersistence from the persistence section."""
    if config is None:
        return StatePersistence()

    config = config.get("persistence", {})
    persistence_config = StatePersistenceConfig(
        state_dir=config.get("state_dir", "state"),
        watchlist_file=config.get("watchlist_file", "watchlist.json"),
        trades_file=config.get("trades_file", "trades.json"),
        history_file=config.get("history_file", "trade_history.json"),
        blacklist_file=config.get("blacklist_file", "blacklist.json"),
        max_backups=config.get("max_backups", 5),
    )
    return StatePersistence(persistence_config)
