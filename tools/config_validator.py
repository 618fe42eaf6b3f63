"""
Configuration Validation Module

Validates app.yaml and settings.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from infra.settings import TradingSettings

logger = logging.getLogger(__name__)

TIMEFRAME_SECONDS = {"15m": 900, "1h": 3600, "4h": 14400}
_SIGNER_PATH = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")


# ===== App Schema =====
class AppSection(BaseModel):
    """Process identity and state location"""
    name: str = Field(default="pulse-trader", min_length=1)
    state_dir: str = Field(default="data", min_length=1, description="Snapshot, lock and CSV directory")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/pulse_trader.log")


class TokenConfig(BaseModel):
    """One side of the traded pair"""
    name: str = Field(min_length=1)
    decimals: int = Field(ge=0, le=18)
    address: str = Field(min_length=32, max_length=44, description="Base58 mint address")


class TokensConfig(BaseModel):
    base: TokenConfig
    quote: TokenConfig


class EndpointsConfig(BaseModel):
    rpc_url: str = Field(min_length=1)
    sentiment_url: Optional[str] = None
    price_url: Optional[str] = None
    quote_url: Optional[str] = None
    relay_url: Optional[str] = None
    tip_floor_url: Optional[str] = None

    @field_validator("rpc_url", "sentiment_url", "price_url", "quote_url", "relay_url", "tip_floor_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"endpoint must be an http(s) URL, got {v!r}")
        return v


class WalletConfig(BaseModel):
    address_env: str = Field(default="WALLET_ADDRESS", min_length=1)
    signer: Optional[str] = Field(default=None, description="module:callable returning a BundleSigner")

    @field_validator("signer")
    @classmethod
    def validate_signer(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _SIGNER_PATH.match(v):
            raise ValueError(f"signer must look like 'package.module:factory', got {v!r}")
        return v


class ExecutionSchema(BaseModel):
    """Attempt budgets for quotes, bundles and status polling"""
    max_attempts: int = Field(default=5, ge=1)
    retry_delay_seconds: float = Field(default=5.0, ge=0)
    bundle_attempts: int = Field(default=5, ge=1)
    bundle_retry_delay_seconds: float = Field(default=5.0, ge=0)
    status_poll_interval_seconds: float = Field(default=2.0, gt=0)
    status_poll_attempts: int = Field(default=45, ge=1)
    submit_max_retries: int = Field(default=5, ge=0)
    tip_floor_timeout_seconds: float = Field(default=21.0, gt=0)


class AlertsConfig(BaseModel):
    webhook_url: Optional[str] = None
    webhook_env: Optional[str] = None
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=1, le=65535)
    health_port: Optional[int] = Field(default=None, ge=1, le=65535)
    alerts_enabled: bool = False
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    persistence_failure_threshold: int = Field(default=3, ge=1)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tokens: TokensConfig
    endpoints: EndpointsConfig
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    execution: ExecutionSchema = Field(default_factory=ExecutionSchema)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)

    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = ">" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        if not isinstance(config, dict):
            errors.append(f"{filename}: top level must be a mapping")
            return errors
        schema(**config)
        logger.info(f"{filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against AppSchema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_settings(config_dir: Path) -> List[str]:
    """
    Validate settings.yaml against TradingSettings.

    A missing settings file is not an error: the engine writes defaults on
    first start.
    """
    if not (config_dir / "settings.yaml").exists():
        logger.info("settings.yaml not found; defaults will be written on first start")
        return []
    return _validate_file(config_dir, "settings.yaml", TradingSettings)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across the two files.

    Detects:
    - Base and quote resolving to the same mint
    - A settle delay that swallows the whole timeframe
    - Metrics and health servers bound to the same port
    - Alerts enabled with no webhook and no dry run
    """
    errors = []
    app = load_yaml_file(config_dir / "app.yaml")
    settings_path = config_dir / "settings.yaml"
    settings = load_yaml_file(settings_path) if settings_path.exists() else {}

    tokens = app.get("tokens", {})
    if tokens.get("base", {}).get("address") == tokens.get("quote", {}).get("address"):
        errors.append("app.yaml: tokens.base and tokens.quote have the same address")

    timeframe = settings.get("timeframe", "15m")
    settle_delay = float(settings.get("settle_delay_seconds", 45))
    if settle_delay >= TIMEFRAME_SECONDS.get(timeframe, 900):
        errors.append(
            f"settings.yaml: settle_delay_seconds ({settle_delay}) must be shorter than the {timeframe} timeframe"
        )

    monitoring = app.get("monitoring", {}) or {}
    if monitoring.get("metrics_enabled") and monitoring.get("health_port") is not None:
        if monitoring.get("health_port") == monitoring.get("metrics_port", 9100):
            errors.append("app.yaml: monitoring.metrics_port and monitoring.health_port collide")

    alerts = monitoring.get("alerts", {}) or {}
    if monitoring.get("alerts_enabled") and not (
        alerts.get("webhook_url") or alerts.get("webhook_env") or alerts.get("dry_run")
    ):
        errors.append("app.yaml: alerts_enabled requires alerts.webhook_url, alerts.webhook_env or dry_run")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate every config file in config_dir.

    Returns:
        List of error messages (empty if valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_settings(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
