"""
Exit Engine Infrastructure: State Store

Persists open positions and account metrics as JSON with atomic writes so a
restarted monitor can resume where it left off.
"""

import json
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from pathlib import Path
import logging

from core.models import Position

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1

DEFAULT_ACCOUNT_STATE = {
    "current_balance": None,
    "high_water_mark": None,
    "daily_start_balance": None,
    "day": None,
    "emergency_stop_active": False,
    "system_enabled": True,
    "consecutive_losses": 0,
    "circuit_breakers": {},  # reason -> {tripped, tripped_at}
}


class PositionStateStore:
    """
    JSON persistence for open positions and account state.

    Features:
    - Atomic writes (temp file + rename)
    - Integers (quantity, cost basis, lamport balances) stored as strings
    - Corrupt files renamed aside and treated as empty
    - Timestamped backups
    """

    def __init__(
        self,
        positions_file: str = "data/open_positions.json",
        account_file: str = "data/account_state.json",
    ):
        self.positions_file = Path(positions_file)
        self.account_file = Path(account_file)
        self.positions_file.parent.mkdir(parents=True, exist_ok=True)
        self.account_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized PositionStateStore at {self.positions_file} / {self.account_file}")

    @classmethod
    def from_config(cls, persistence_config) -> "PositionStateStore":
        return cls(
            positions_file=persistence_config.positions_file,
            account_file=persistence_config.account_file,
        )

    # ---- positions ----

    def save_positions(self, positions: Iterable[Position]) -> None:
        document = {
            "version": SCHEMA_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "positions": [p.to_dict() for p in positions],
        }
        self._write_json(self.positions_file, document)
        logger.debug(f"Saved {len(document['positions'])} positions")

    def load_positions(self) -> List[Position]:
        """
        Load persisted positions. Missing or corrupt files yield an empty list;
        individually malformed entries are skipped.
        """
        document = self._read_json(self.positions_file)
        if document is None:
            return []
        raw_positions = document.get("positions") if isinstance(document, dict) else None
        if not isinstance(raw_positions, list):
            self._quarantine(self.positions_file, "missing positions list")
            return []

        positions = []
        for raw in raw_positions:
            try:
                positions.append(Position.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed persisted position {raw!r:.120}: {e}")
        logger.info(f"Loaded {len(positions)} persisted positions from {self.positions_file}")
        return positions

    # ---- account ----

    def save_account(self, state: Dict[str, Any]) -> None:
        document = {**DEFAULT_ACCOUNT_STATE, **state}
        for key in ("current_balance", "high_water_mark", "daily_start_balance"):
            if document.get(key) is not None:
                document[key] = str(int(document[key]))
        document["version"] = SCHEMA_VERSION
        self._write_json(self.account_file, document)

    def load_account(self) -> Dict[str, Any]:
        """Account state with defaults merged; lamport fields parsed back to int."""
        document = self._read_json(self.account_file)
        if not isinstance(document, dict):
            if document is not None:
                self._quarantine(self.account_file, "not an object")
            return dict(DEFAULT_ACCOUNT_STATE)

        state = {**DEFAULT_ACCOUNT_STATE, **document}
        state.pop("version", None)
        try:
            for key in ("current_balance", "high_water_mark", "daily_start_balance"):
                if state.get(key) is not None:
                    state[key] = int(state[key])
        except (TypeError, ValueError) as e:
            self._quarantine(self.account_file, f"bad balance field: {e}")
            return dict(DEFAULT_ACCOUNT_STATE)
        return state

    # ---- backups ----

    def create_backup(self, backup_dir: Optional[str] = None) -> List[Path]:
        """Copy existing state files into a timestamped backup directory."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target_dir = Path(backup_dir) if backup_dir else self.positions_file.parent / "backups"
        target_dir = target_dir / stamp
        copied = []
        with self._lock:
            for source in (self.positions_file, self.account_file):
                if not source.exists():
                    continue
                target_dir.mkdir(parents=True, exist_ok=True)
                destination = target_dir / source.name
                shutil.copy2(source, destination)
                copied.append(destination)
        if copied:
            logger.info(f"Backed up {len(copied)} state files to {target_dir}")
        return copied

    # ---- io ----

    def _write_json(self, path: Path, document: Dict[str, Any]) -> None:
        with self._lock:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=path.parent,
                prefix=f".{path.stem}_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                # Atomic rename
                os.replace(temp_path, path)
            except OSError:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

    def _read_json(self, path: Path) -> Optional[Any]:
        with self._lock:
            if not path.exists():
                logger.debug(f"No state file at {path}")
                return None
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.error(f"Corrupt state file {path}: {e}")
            self._quarantine_locked(path, "unparseable JSON")
            return None

    def _quarantine(self, path: Path, why: str) -> Optional[Path]:
        with self._lock:
            return self._quarantine_locked(path, why)

    @staticmethod
    def _quarantine_locked(path: Path, why: str) -> Optional[Path]:
        if not path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        aside = path.with_name(f"{path.name}.corrupt-{stamp}")
        os.replace(path, aside)
        logger.warning(f"Moved corrupt state file {path} aside to {aside} ({why}); starting empty")
        return aside


__all__ = ["DEFAULT_ACCOUNT_STATE", "PositionStateStore"]
