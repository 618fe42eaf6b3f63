"""
pulse-trader Runner: Main Loop

Builds every collaborator from config/app.yaml and config/settings.yaml,
hands them to the TradingEngine and runs aligned cycles until stopped.

Flow per cycle (see core/trading_cycle.py):
1. Fetch sentiment index and price
2. Refresh balances
3. Decide (sentiment buckets or threshold allocation)
4. Execute close legs and open legs as signed bundles
5. Reconcile ledger and order book, persist snapshot

Usage:
    python -m runner.main_loop [--config-dir config] [--once] [--monitor]
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from analytics.trade_log import MarketDataLog, SwapAuditLog
from core.audit_log import AuditLogger
from core.clients import BundleSigner
from core.context import EngineContext, ExecutionConfig
from core.engine import TradingEngine
from core.exceptions import StartupError
from core.tokens import TokenPair
from infra.alerting import AlertService, AlertSeverity
from infra.healthcheck import HealthServer
from infra.http_clients import (
    FearGreedFeed,
    JitoRelay,
    JupiterPriceOracle,
    JupiterQuoteProvider,
    SolanaRpcReader,
)
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.settings import SettingsProvider
from infra.state_store import create_state_store_from_config

logger = logging.getLogger(__name__)


def load_signer(import_path: str) -> BundleSigner:
    """Resolve ``package.module:factory`` and call the factory."""
    module_name, _, attr = import_path.partition(":")
    if not module_name or not attr:
        raise StartupError(f"Invalid signer path {import_path!r}; expected 'module:callable'")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise StartupError(f"Cannot load signer {import_path}: {e}") from e

    signer = factory()
    if not isinstance(signer, BundleSigner):
        raise StartupError(f"{import_path} did not return a BundleSigner")
    return signer


class TradingLoop:
    """
    Process orchestrator.

    Responsibilities:
    - Validate and load config
    - Enforce a single writer per state directory
    - Build clients, stores and observability hooks
    - Run the engine and shut down cleanly on SIGINT/SIGTERM
    """

    def __init__(self, config_dir: str = "config", monitor: bool = False):
        self.config_dir = Path(config_dir)
        self._load_environment()

        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise StartupError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self._configure_logging(self.app_config.get("logging", {}) or {})

        app_cfg = self.app_config.get("app", {}) or {}
        self.name = app_cfg.get("name", "pulse-trader")
        self.state_dir = Path(app_cfg.get("state_dir", "data"))

        self.instance_lock = SingleInstanceLock(self.name, lock_dir=str(self.state_dir))
        if not self.instance_lock.acquire():
            raise StartupError(
                f"Another {self.name} instance owns {self.state_dir}; "
                f"remove {self.instance_lock.lock_file} only if that process is gone"
            )

        overrides = {"monitor_mode": True} if monitor else {}
        self.settings = SettingsProvider(str(self.config_dir / "settings.yaml"), overrides=overrides)
        monitor_mode = self.settings.get().monitor_mode

        wallet_cfg = self.app_config.get("wallet", {}) or {}
        address_env = wallet_cfg.get("address_env", "WALLET_ADDRESS")
        self.wallet_address = os.getenv(address_env)
        if not self.wallet_address:
            raise StartupError(f"Wallet address missing: set {address_env}")

        signer_path = wallet_cfg.get("signer")
        self.signer: Optional[BundleSigner] = load_signer(signer_path) if signer_path else None
        if self.signer is None and not monitor_mode:
            raise StartupError("No wallet.signer configured; live trading needs a signer (or run with --monitor)")

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=monitoring_cfg.get("metrics_enabled", False),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()

        self.alerts = AlertService.from_config(
            monitoring_cfg.get("alerts_enabled", False),
            monitoring_cfg.get("alerts"),
        )
        if self.alerts.is_enabled():
            logger.info(
                f"Alerting enabled (min_severity="
                f"{(monitoring_cfg.get('alerts') or {}).get('min_severity', 'warning')})"
            )

        self.store = create_state_store_from_config({
            "store": "json",
            "path": str(self.state_dir / "state.json"),
            "failure_threshold": monitoring_cfg.get("persistence_failure_threshold", 3),
        })

        self.clients = self._build_clients()
        self.execution = ExecutionConfig.from_config(self.app_config.get("execution"))
        log_file = (self.app_config.get("logging", {}) or {}).get("file", "logs/pulse_trader.log")

        self.context = EngineContext(
            pair=TokenPair.from_config(self.app_config["tokens"]),
            wallet_address=self.wallet_address,
            sentiment_feed=self.clients["sentiment"],
            price_oracle=self.clients["price"],
            quotes=self.clients["quotes"],
            relay=self.clients["relay"],
            chain=self.clients["chain"],
            settings=self.settings,
            store=self.store,
            signer=self.signer,
            execution=self.execution,
            audit=AuditLogger(audit_file=log_file.replace(".log", "_audit.jsonl")),
            swap_log=SwapAuditLog(log_dir=str(self.state_dir / "logs")),
            market_log=MarketDataLog(log_dir=str(self.state_dir / "logs")),
            metrics=self.metrics,
            alerts=self.alerts,
        )
        self.engine = TradingEngine(self.context)

        self.health_server: Optional[HealthServer] = None
        health_port = monitoring_cfg.get("health_port")
        if health_port:
            self.health_server = HealthServer(
                int(health_port),
                status_provider=self.engine.health,
                snapshot_provider=self.engine.get_latest_snapshot,
            )

        logger.info(
            f"Initialized {self.name} for {self.context.pair.symbol} "
            f"(monitor_mode={monitor_mode}, state={self.store.describe()})"
        )

    def _load_environment(self) -> None:
        env_file = self.config_dir.parent / ".env"
        if env_file.exists():
            load_dotenv(env_file)
        else:
            load_dotenv()

    def _load_yaml(self, filename: str) -> Dict[str, Any]:
        with open(self.config_dir / filename, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _configure_logging(log_cfg: Dict[str, Any]) -> None:
        log_file = log_cfg.get("file", "logs/pulse_trader.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _build_clients(self) -> Dict[str, Any]:
        endpoints = self.app_config.get("endpoints", {}) or {}
        execution = self.app_config.get("execution", {}) or {}

        def _url(key: str) -> Dict[str, str]:
            return {"url": endpoints[key]} if endpoints.get(key) else {}

        relay_kwargs = _url("relay_url")
        if endpoints.get("tip_floor_url"):
            relay_kwargs["tip_floor_url"] = endpoints["tip_floor_url"]

        return {
            "sentiment": FearGreedFeed(**_url("sentiment_url")),
            "price": JupiterPriceOracle(**_url("price_url")),
            "quotes": JupiterQuoteProvider(**_url("quote_url")),
            "relay": JitoRelay(
                submit_max_retries=int(execution.get("submit_max_retries", 5)),
                tip_floor_timeout_seconds=float(execution.get("tip_floor_timeout_seconds", 21)),
                **relay_kwargs,
            ),
            "chain": SolanaRpcReader(url=endpoints["rpc_url"]),
        }

    def _handle_stop(self, signame: str) -> None:
        logger.warning(f"{signame} received; stopping after the current step")
        self.engine.stop(signame.lower())

    async def _close_clients(self) -> None:
        for client in self.clients.values():
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Failed closing {type(client).__name__}: {e}")

    async def run(self, once: bool = False) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_stop, sig.name)

        if self.health_server is not None:
            self.health_server.start()
        try:
            await self.engine.start()
            if once:
                result = await self.engine.run_once()
                logger.info(f"Single cycle finished: {result.status}")
            else:
                await self.engine.run()
        finally:
            await self._close_clients()
            if self.health_server is not None:
                self.health_server.stop()
            self.instance_lock.release()
            logger.info("Shutdown complete")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="pulse-trader sentiment trading agent")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--monitor", action="store_true", help="Force monitor mode (no swaps)")
    args = parser.parse_args(argv)

    trading_loop = None
    try:
        trading_loop = TradingLoop(config_dir=args.config_dir, monitor=args.monitor)
        asyncio.run(trading_loop.run(once=args.once))
    except StartupError as e:
        logger.critical(f"Startup failed: {e}")
        if trading_loop is not None:
            trading_loop.alerts.notify(AlertSeverity.CRITICAL, "Startup failed", str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
