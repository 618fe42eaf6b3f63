"""
Audit Logger

Structured JSONL trail of every trading cycle: the signal that was read, the
decision taken, each leg's outcome, the no-trade reason and whether the
snapshot was persisted.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Append-only cycle audit.

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self, result: Any) -> None:
        """
        Log a completed cycle.

        Args:
            result: CycleResult (anything with to_dict() works)
        """
        try:
            data = result.to_dict()
            entry = {
                "timestamp": data.get("started_at"),
                "status": data.get("status"),
                "mode": data.get("trading_mode"),
                "monitor_mode": data.get("monitor_mode"),
                "index": data.get("index"),
                "sentiment": data.get("sentiment"),
                "price": data.get("price"),
                "decision": data.get("decision"),
                "no_trade_reason": data.get("no_trade_reason"),
                "legs": [self._serialize_leg(leg) for leg in data.get("legs", [])],
                "persisted": data.get("persisted"),
                "duration_seconds": data.get("duration_seconds"),
            }
            if data.get("error"):
                entry["error"] = data["error"]

            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")

            logger.debug(f"Audited cycle: status={entry['status']}")

        except (OSError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Failed to write audit log: {e}")

    @staticmethod
    def _serialize_leg(leg: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "leg": leg.get("leg"),
            "direction": leg.get("direction"),
            "result": leg.get("result"),
            "attempts": leg.get("attempts"),
            "tx_id": leg.get("tx_id"),
            "price": leg.get("price"),
            "closes_trade_id": leg.get("closes_trade_id"),
        }

    def get_recent_cycles(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent cycle logs.

        Returns:
            List of cycle log entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        cycles = []
        for line in lines[-n:]:
            try:
                cycles.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(cycles))
