import json
import os
import urllib.error
import urllib.request
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import REGISTRY

from analytics.trade_log import MarketDataLog, SwapAuditLog
from core.audit_log import AuditLogger
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.healthcheck import HealthServer
from infra.instance_lock import SingleInstanceLock
from infra.metrics import CycleStats, MetricsRecorder


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_alerts(clock=None, **overrides):
    config = AlertConfig(
        enabled=True,
        webhook_url="https://hooks.test/alert",
        min_severity=AlertSeverity.WARNING,
        dry_run=False,
        dedupe_seconds=60,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return AlertService(config, clock=clock or FakeClock())


class TestAlerting:

    def test_severity_from_string(self):
        assert AlertSeverity.from_string("critical") is AlertSeverity.CRITICAL
        assert AlertSeverity.from_string("bogus") is AlertSeverity.WARNING
        assert AlertSeverity.from_string("", default=AlertSeverity.INFO) is AlertSeverity.INFO

    def test_posts_webhook_payload(self):
        alerts = make_alerts()
        response = MagicMock(status=204)
        response.__enter__.return_value = response

        with patch("infra.alerting.urllib.request.urlopen", return_value=response) as urlopen:
            assert alerts.notify(AlertSeverity.CRITICAL, "Swap exhausted", "open leg failed", {"attempts": 3})

        request = urlopen.call_args[0][0]
        assert request.full_url == "https://hooks.test/alert"
        body = json.loads(request.data)
        assert body["text"].startswith("[CRITICAL] Swap exhausted | open leg failed")
        assert 'context={"attempts": 3}' in body["content"]

    def test_below_min_severity_filtered(self):
        alerts = make_alerts(dry_run=True)
        assert alerts.notify(AlertSeverity.INFO, "fyi", "nothing") is False

    def test_dedupe_and_resolve(self):
        clock = FakeClock()
        alerts = make_alerts(clock=clock, dry_run=True)

        assert alerts.notify(AlertSeverity.WARNING, "Degraded", "x")
        assert not alerts.notify(AlertSeverity.WARNING, "Degraded", "y")

        clock.now += 61
        assert alerts.notify(AlertSeverity.WARNING, "Degraded", "z")

        alerts.resolve(AlertSeverity.WARNING, "Degraded")
        assert alerts.notify(AlertSeverity.WARNING, "Degraded", "again")

    def test_delivery_failure_is_logged_not_raised(self):
        alerts = make_alerts()

        with patch("infra.alerting.urllib.request.urlopen", side_effect=urllib.error.URLError("down")):
            assert alerts.notify(AlertSeverity.CRITICAL, "Boom", "x") is True

    def test_enabled_without_url_is_disabled(self):
        alerts = make_alerts(webhook_url=None)
        assert not alerts.is_enabled()
        assert alerts.notify(AlertSeverity.CRITICAL, "Boom", "x") is False

    def test_from_config_reads_env(self, monkeypatch):
        monkeypatch.setenv("PULSE_WEBHOOK", "https://hooks.test/env")
        alerts = AlertService.from_config(True, {"webhook_env": "PULSE_WEBHOOK", "min_severity": "critical"})

        assert alerts.is_enabled()
        assert alerts._config.webhook_url == "https://hooks.test/env"
        assert alerts._config.min_severity is AlertSeverity.CRITICAL

    def test_from_config_expands_variables(self, monkeypatch):
        monkeypatch.setenv("HOOK_HOST", "hooks.test")
        alerts = AlertService.from_config(True, {"webhook_url": "https://${HOOK_HOST}/x"})
        assert alerts._config.webhook_url == "https://hooks.test/x"


class TestHealthServer:

    @pytest.fixture
    def server(self):
        state = {"status": {"ok": True, "status": "ok"}, "snapshot": None}
        server = HealthServer(0, lambda: state["status"], lambda: state["snapshot"])
        server.start()
        yield server, state
        server.stop()

    def get(self, server, path):
        url = f"http://127.0.0.1:{server.port}{path}"
        try:
            with urllib.request.urlopen(url, timeout=5) as response:
                return response.status, json.loads(response.read() or b"null")
        except urllib.error.HTTPError as e:
            body = e.read()
            return e.code, json.loads(body) if body else None

    def test_health_ok(self, server):
        srv, _ = server
        assert self.get(srv, "/health") == (200, {"ok": True, "status": "ok"})

    def test_health_degraded_is_503(self, server):
        srv, state = server
        state["status"] = {"ok": False, "status": "degraded"}
        code, body = self.get(srv, "/health")
        assert code == 503
        assert body["status"] == "degraded"

    def test_snapshot_404_until_available(self, server):
        srv, state = server
        assert self.get(srv, "/snapshot")[0] == 404

        state["snapshot"] = {"pair": "SOL/USDC"}
        assert self.get(srv, "/snapshot") == (200, {"pair": "SOL/USDC"})

    def test_unknown_path(self, server):
        srv, _ = server
        assert self.get(srv, "/metrics")[0] == 404

    def test_port_none_when_stopped(self):
        assert HealthServer(0, dict).port is None


class TestInstanceLock:

    def test_acquire_and_release(self, tmp_path):
        lock = SingleInstanceLock("pulse", str(tmp_path))

        assert lock.acquire()
        assert lock.owner_pid() == os.getpid()

        lock.release()
        assert not lock.lock_file.exists()

    def test_stale_lock_replaced(self, tmp_path, monkeypatch):
        (tmp_path / "pulse.pid").write_text("999999")
        monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: False))
        lock = SingleInstanceLock("pulse", str(tmp_path))

        assert lock.acquire()
        assert lock.owner_pid() == os.getpid()
        lock.release()

    def test_live_owner_blocks(self, tmp_path, monkeypatch):
        (tmp_path / "pulse.pid").write_text("4242")
        monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: True))
        lock = SingleInstanceLock("pulse", str(tmp_path))

        assert not lock.acquire()
        assert lock.owner_pid() == 4242

    def test_context_manager(self, tmp_path):
        with SingleInstanceLock("pulse", str(tmp_path)) as lock:
            assert lock.lock_file.exists()
        assert not lock.lock_file.exists()


class _Result:
    def __init__(self, **data):
        self.data = data

    def to_dict(self):
        return self.data


class TestAuditLogs:

    def test_cycle_audit_jsonl(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))

        audit.log_cycle(_Result(started_at="t1", status="NO_TRADE", no_trade_reason="neutral_sentiment", legs=[]))
        audit.log_cycle(_Result(
            started_at="t2", status="TRADED",
            legs=[{"leg": "open", "direction": "buy", "result": "success", "attempts": 1, "tx_id": "sig"}],
            error=None,
        ))

        recent = audit.get_recent_cycles(5)
        assert [c["timestamp"] for c in recent] == ["t2", "t1"]
        assert recent[0]["legs"][0]["tx_id"] == "sig"
        assert "error" not in recent[0]
        assert recent[1]["no_trade_reason"] == "neutral_sentiment"

    def test_unserializable_result_does_not_raise(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        audit.log_cycle(object())
        assert audit.get_recent_cycles() == []

    def test_swap_csv(self, tmp_path):
        log = SwapAuditLog(str(tmp_path))
        ts = datetime(2025, 1, 1, tzinfo=timezone.utc)

        assert log.record("USDC", 25, "SOL", 0.25, "Landed", "bundle-1", 2, timestamp=ts)
        assert log.record("SOL", 0.1, "USDC", 10, "Failed")

        rows = log.read_rows()
        assert rows[0] == {
            "Timestamp": ts.isoformat(), "Input Token": "USDC", "Input Amount": "25.000000",
            "Output Token": "SOL", "Output Amount": "0.250000", "Relay Status": "Landed",
            "Bundle Id": "bundle-1", "Attempts": "2",
        }
        assert rows[1]["Bundle Id"] == ""
        assert log.read_rows(limit=1) == rows[1:]

    def test_market_csv_recreates_header(self, tmp_path):
        log = MarketDataLog(str(tmp_path))
        log.csv_file.unlink()

        assert log.record(101.5, 22, "FEAR")
        assert log.read_rows()[0]["Sentiment"] == "FEAR"


class TestMetrics:

    def test_disabled_recorder_keeps_readbacks(self):
        metrics = MetricsRecorder(enabled=False)
        metrics.observe_cycle(CycleStats("NO_TRADE", "NEUTRAL", 0, 0, 0.1))
        metrics.record_no_trade_reason("neutral_sentiment")
        metrics.record_swap_outcome("open", "success")
        metrics.record_persistence(ok=False, degraded=True)

        assert metrics.last_cycle().status == "NO_TRADE"
        assert metrics.last_no_trade_reason() == "neutral_sentiment"
        assert metrics.swap_outcomes() == {"open:success": 1}
        assert metrics.is_degraded()

    def test_singleton(self):
        assert MetricsRecorder(enabled=False) is MetricsRecorder(enabled=True)

    def test_enabled_recorder_exports(self):
        metrics = MetricsRecorder(enabled=True)
        metrics.record_swap_outcome("close", "bundleFailure", attempts=3)
        metrics.record_portfolio(1500.0, -2.5, 1)

        assert REGISTRY.get_sample_value(
            "pulse_swap_outcomes_total", {"leg": "close", "result": "bundleFailure"}
        ) == 1.0
        assert REGISTRY.get_sample_value("pulse_swap_retry_attempts_total", {"leg": "close"}) == 2.0
        assert REGISTRY.get_sample_value("pulse_portfolio_value") == 1500.0
