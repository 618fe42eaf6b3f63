"""
Append-only CSV audit trails.

swaps.csv: one row per swap executor outcome, landed or not.
market_data.csv: one row per cycle with the price and sentiment reading.

Both files are plain CSV so they open in a spreadsheet without tooling.
A failed append is logged and never interrupts trading.
"""

import csv
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

SWAP_COLUMNS = [
    "Timestamp", "Input Token", "Input Amount", "Output Token",
    "Output Amount", "Relay Status", "Bundle Id", "Attempts",
]

MARKET_DATA_COLUMNS = ["Timestamp", "Price", "Index", "Sentiment"]


class _CsvLog:
    """CSV file with a header row written on first use"""

    columns: Sequence[str] = ()

    def __init__(self, log_dir: str, filename: str):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.csv_file = self.log_dir / filename
        self._init_csv()

    def _init_csv(self):
        if not self.csv_file.exists():
            with open(self.csv_file, "w", newline="") as f:
                csv.writer(f).writerow(self.columns)

    def _append(self, row: List) -> bool:
        try:
            if not self.csv_file.exists():
                self._init_csv()
            with open(self.csv_file, "a", newline="") as f:
                csv.writer(f).writerow(row)
            return True
        except OSError as e:
            logger.error(f"Failed to append to {self.csv_file}: {e}")
            return False

    def read_rows(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        """Most recent rows last; `limit` keeps only the tail."""
        if not self.csv_file.exists():
            return []
        with open(self.csv_file, "r", newline="") as f:
            rows = list(csv.DictReader(f))
        return rows[-limit:] if limit else rows


class SwapAuditLog(_CsvLog):
    columns = SWAP_COLUMNS

    def __init__(self, log_dir: str = "data/logs", filename: str = "swaps.csv"):
        super().__init__(log_dir, filename)

    def record(self, input_token: str, input_amount: float, output_token: str,
               output_amount: float, relay_status: str, bundle_id: Optional[str] = None,
               attempts: int = 1, timestamp: Optional[datetime] = None) -> bool:
        ts = timestamp or datetime.now(timezone.utc)
        return self._append([
            ts.isoformat(),
            input_token,
            f"{input_amount:.6f}",
            output_token,
            f"{output_amount:.6f}",
            relay_status,
            bundle_id or "",
            attempts,
        ])


class MarketDataLog(_CsvLog):
    columns = MARKET_DATA_COLUMNS

    def __init__(self, log_dir: str = "data/logs", filename: str = "market_data.csv"):
        super().__init__(log_dir, filename)

    def record(self, price: float, index: float, sentiment: str,
               timestamp: Optional[datetime] = None) -> bool:
        ts = timestamp or datetime.now(timezone.utc)
        return self._append([ts.isoformat(), price, index, sentiment])
