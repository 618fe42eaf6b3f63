"""
State Store

Whole-snapshot persistence behind a two-method port (load/save) so the JSON
file can later be swapped for a transactional store without touching the
engine.

Single-writer: writes are whole-file replaces with no locking. Exactly one
process may own a state file; runner/main_loop.py enforces this with the
instance lock.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
import logging

logger = logging.getLogger(__name__)


class StoragePort(Protocol):
    def load(self) -> Optional[Dict[str, Any]]:
        ...

    def save(self, snapshot: Dict[str, Any]) -> bool:
        ...


class JsonStateStore:
    """
    Snapshot storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Failed saves are logged, never raised; the in-memory state stays
      authoritative
    - Consecutive failures at or above `failure_threshold` flip `degraded`
      until the next successful save
    """

    def __init__(self, state_file: str = "data/state.json", failure_threshold: int = 3):
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.failure_threshold = max(1, int(failure_threshold))

        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.last_saved_at: Optional[str] = None
        self._snapshot: Optional[Dict[str, Any]] = None
        logger.info(f"Initialized JsonStateStore at {self.state_file}")

    def describe(self) -> str:
        return f"json:{self.state_file}"

    @property
    def degraded(self) -> bool:
        return self.consecutive_failures >= self.failure_threshold

    @property
    def latest(self) -> Optional[Dict[str, Any]]:
        """Last snapshot successfully written or read by this process."""
        return self._snapshot

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Load the snapshot.

        Returns:
            Snapshot dict, or None when missing or unreadable (fresh start)
        """
        if not self.state_file.exists():
            logger.info(f"No state file at {self.state_file}")
            return None

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Invalid state file format in {self.state_file}, ignoring")
            return None

        self._snapshot = data
        logger.debug("Loaded state from file")
        return data

    def save(self, snapshot: Dict[str, Any]) -> bool:
        """
        Save the snapshot atomically.

        Returns:
            True on success; False (logged, counted) on failure
        """
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp"
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2)

            # Atomic rename
            os.replace(temp_path, self.state_file)

        except (OSError, TypeError, ValueError) as e:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)
            was_degraded = self.degraded
            self.consecutive_failures += 1
            self.last_error = str(e)
            logger.error(
                f"Failed to save state ({self.consecutive_failures} consecutive): {e}"
            )
            if self.degraded and not was_degraded:
                logger.critical(
                    f"State persistence degraded after {self.consecutive_failures} failures"
                )
            return False

        if self.degraded:
            logger.info("State persistence recovered")
        self.consecutive_failures = 0
        self.last_error = None
        self.last_saved_at = datetime.now(timezone.utc).isoformat()
        self._snapshot = snapshot
        logger.debug("Saved state to file")
        return True


def create_state_store_from_config(cfg: Optional[Dict[str, Any]]) -> JsonStateStore:
    """Build the configured store; only the JSON backend ships today."""
    cfg = cfg or {}
    kind = str(cfg.get("store", "json")).lower()
    if kind != "json":
        raise ValueError(f"Unsupported state store: {kind}")
    return JsonStateStore(
        state_file=cfg.get("path", "data/state.json"),
        failure_threshold=cfg.get("failure_threshold", 3),
    )
