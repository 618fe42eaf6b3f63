"""
Trading settings document and its cached provider.

The settings file (config/settings.yaml by default) is the operator-facing
knob set: sentiment boundaries and multipliers, sizing method, profit gate,
cooldown, monitor mode and the threshold strategy parameters. It is re-read
at most once per TTL so edits apply on the next cycle without a restart.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.sentiment import BOUNDARY_KEYS, DEFAULT_BOUNDARIES, boundaries_ascending

logger = logging.getLogger(__name__)

SIZING_METHODS = ("VARIABLE", "STRATEGIC")

DEFAULT_MULTIPLIERS = {
    "EXTREME_FEAR": 0.04,
    "FEAR": 0.02,
    "GREED": 0.02,
    "EXTREME_GREED": 0.04,
}


class SettingsError(ValueError):
    """Rejected settings update."""


class ThresholdSettings(BaseModel):
    """Parameters for the two-way allocation strategy"""
    threshold: float = Field(default=50.0, ge=0, le=100, description="Index level splitting the two regimes")
    switch_delay: int = Field(default=1, ge=1, description="Consecutive cycles required before switching")
    allocation_percentage: float = Field(default=70.0, gt=0, le=100, description="Share held in the favoured token")
    min_trade_amount: float = Field(default=0.00001, ge=0, description="Smallest base rebalance worth trading")


class TradingSettings(BaseModel):
    """Validated trading settings"""
    sentiment_boundaries: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_BOUNDARIES))
    sentiment_multipliers: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_MULTIPLIERS))
    trade_size_method: str = Field(default="STRATEGIC")
    strategic_percentage: float = Field(default=2.5, gt=0, le=100)
    min_profit_percent: float = Field(default=0.2, ge=0)
    cooldown_minutes: float = Field(default=0.0, ge=0)
    monitor_mode: bool = Field(default=False)
    min_signal_change: float = Field(default=0.0, ge=0, description="Index points required to re-trade a bucket")
    trading_mode: str = Field(default="SENTIMENT", pattern="^(SENTIMENT|THRESHOLD)$")
    threshold: ThresholdSettings = Field(default_factory=ThresholdSettings)
    timeframe: str = Field(default="15m", pattern="^(15m|1h|4h)$")
    settle_delay_seconds: float = Field(default=45.0, ge=0)
    min_usd_value: float = Field(default=5.0, ge=0, description="Minimum-balance guard in quote units")
    slippage_bps: int = Field(default=200, ge=0, le=10000)
    max_tip_lamports: int = Field(default=400_000, gt=0)
    tip_multiplier: float = Field(default=1.1, ge=1.0)
    static_tip_lamports: int = Field(default=100_000, gt=0)
    accounting_lamports: int = Field(default=0, ge=0)

    @field_validator("sentiment_boundaries")
    @classmethod
    def validate_boundaries(cls, v: Dict[str, float]) -> Dict[str, float]:
        missing = [key for key in BOUNDARY_KEYS if key not in v]
        if missing:
            raise ValueError(f"missing sentiment boundaries: {missing}")
        for key in BOUNDARY_KEYS:
            if not 0 <= v[key] <= 100:
                raise ValueError(f"boundary {key} must be within 0..100, got {v[key]}")
        if not boundaries_ascending(v):
            raise ValueError(f"sentiment boundaries must be strictly ascending: {v}")
        return {key: float(v[key]) for key in BOUNDARY_KEYS}

    @field_validator("sentiment_multipliers")
    @classmethod
    def validate_multipliers(cls, v: Dict[str, float]) -> Dict[str, float]:
        for key, value in v.items():
            if key not in BOUNDARY_KEYS:
                raise ValueError(f"unknown sentiment multiplier {key}")
            if not 0 < value <= 1:
                raise ValueError(f"multiplier {key} must be 0 < m <= 1, got {value}")
        return v

    @field_validator("trade_size_method", mode="before")
    @classmethod
    def normalize_sizing_method(cls, v: Any) -> str:
        method = str(v or "").upper()
        if method not in SIZING_METHODS:
            logger.warning(f"Invalid trade size method {v!r}, defaulting to STRATEGIC")
            return "STRATEGIC"
        return method

    @field_validator("monitor_mode", mode="before")
    @classmethod
    def strict_monitor_mode(cls, v: Any) -> bool:
        return v is True


def _deep_merge(base: Dict[str, Any], partial: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in partial.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class SettingsProvider:
    """
    File-backed settings with a short TTL cache.

    A malformed file keeps the last good settings (defaults if none) so a bad
    edit never stops a running engine.
    """

    def __init__(self, path: str = "config/settings.yaml", ttl_seconds: float = 5.0,
                 clock: Callable[[], float] = time.monotonic,
                 overrides: Optional[Dict[str, Any]] = None):
        self.path = Path(path)
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._cached: Optional[TradingSettings] = None
        self._loaded_at: Optional[float] = None
        self._last_good: Optional[TradingSettings] = None
        self._last_good_file: Optional[TradingSettings] = None
        # Process-level overrides (e.g. --monitor); applied on read, never written
        self.overrides: Dict[str, Any] = dict(overrides or {})

        if not self.path.exists():
            logger.info(f"No settings file at {self.path}; writing defaults")
            self._write(TradingSettings())

    def get(self) -> TradingSettings:
        now = self._clock()
        if (
            self._cached is not None
            and self._loaded_at is not None
            and now - self._loaded_at < self.ttl_seconds
        ):
            return self._cached

        self._cached = self._read()
        self._loaded_at = now
        return self._cached

    def invalidate(self) -> None:
        self._cached = None
        self._loaded_at = None

    def update(self, partial: Dict[str, Any]) -> TradingSettings:
        """
        Merge a partial update, validate, persist and return the new settings.

        Raises SettingsError (file untouched) if the merged document is invalid.
        """
        self.get()
        current = (self._last_good_file or TradingSettings()).model_dump()
        merged = _deep_merge(current, partial or {})
        try:
            updated = TradingSettings(**merged)
            TradingSettings(**_deep_merge(merged, self.overrides))
        except ValidationError as e:
            raise SettingsError(f"Invalid settings update: {e}") from e

        self._write(updated)
        self.invalidate()
        logger.info(f"Settings updated: {sorted((partial or {}).keys())}")
        return self.get()

    def _read(self) -> TradingSettings:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise ValueError("settings document must be a mapping")
            file_settings = TradingSettings(**raw)
            settings = TradingSettings(**_deep_merge(file_settings.model_dump(), self.overrides))
            self._last_good_file = file_settings
            self._last_good = settings
            return settings
        except (OSError, yaml.YAMLError, ValueError) as e:
            # pydantic's ValidationError is a ValueError subclass
            fallback = self._last_good or TradingSettings(**_deep_merge(TradingSettings().model_dump(), self.overrides))
            logger.error(f"Failed to read settings from {self.path}: {e}; using last good settings")
            return fallback

    def _write(self, settings: TradingSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".settings_", suffix=".yaml.tmp")
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(settings.model_dump(), f, sort_keys=False)
            os.replace(temp_path, self.path)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
