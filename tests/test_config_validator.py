"""
Tests for tools/config_validator.py against the shipped config and mutated copies.
"""

import shutil
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    load_yaml_file,
    validate_all_configs,
    validate_app,
    validate_sanity_checks,
    validate_settings,
)

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(CONFIG_DIR, target)
    return target


def edit(path: Path, mutate):
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


def test_shipped_config_is_valid():
    assert validate_all_configs(str(CONFIG_DIR)) == []


class TestAppSchema:

    def test_short_mint_address(self, config_dir):
        edit(config_dir / "app.yaml", lambda d: d["tokens"]["base"].update(address="abc"))

        errors = validate_app(config_dir)

        assert len(errors) == 1
        assert "tokens -> base -> address" in errors[0]

    def test_non_http_endpoint(self, config_dir):
        edit(config_dir / "app.yaml", lambda d: d["endpoints"].update(relay_url="ftp://relay"))

        errors = validate_app(config_dir)

        assert any("relay_url" in e and "http(s)" in e for e in errors)

    def test_bad_signer_path(self, config_dir):
        edit(config_dir / "app.yaml", lambda d: d["wallet"].update(signer="not a path"))

        assert any("signer" in e for e in validate_app(config_dir))

    def test_signer_path_accepted(self, config_dir):
        edit(config_dir / "app.yaml", lambda d: d["wallet"].update(signer="my_wallet.signing:build_signer"))

        assert validate_app(config_dir) == []

    def test_missing_tokens(self, config_dir):
        edit(config_dir / "app.yaml", lambda d: d.pop("tokens"))

        assert any(e.startswith("app.yaml: tokens") for e in validate_app(config_dir))

    def test_missing_app_file(self, config_dir):
        (config_dir / "app.yaml").unlink()

        errors = validate_app(config_dir)

        assert len(errors) == 1
        assert "not found" in errors[0]


class TestSettingsFile:

    def test_missing_settings_is_fine(self, config_dir):
        (config_dir / "settings.yaml").unlink()

        assert validate_settings(config_dir) == []

    def test_descending_boundaries(self, config_dir):
        edit(config_dir / "settings.yaml", lambda d: d["sentiment_boundaries"].update(FEAR=70))

        errors = validate_settings(config_dir)

        assert any("sentiment_boundaries" in e for e in errors)

    def test_malformed_yaml_has_context(self, config_dir):
        (config_dir / "settings.yaml").write_text("timeframe: 15m\nthreshold: [1, 2\n")

        errors = validate_settings(config_dir)

        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]
        assert "line" in errors[0]


class TestSanityChecks:

    def test_same_mint_for_both_tokens(self, config_dir):
        def same_mint(d):
            d["tokens"]["quote"]["address"] = d["tokens"]["base"]["address"]
        edit(config_dir / "app.yaml", same_mint)

        assert any("same address" in e for e in validate_sanity_checks(config_dir))

    def test_settle_delay_longer_than_timeframe(self, config_dir):
        edit(config_dir / "settings.yaml", lambda d: d.update(settle_delay_seconds=900))

        errors = validate_sanity_checks(config_dir)

        assert any("settle_delay_seconds" in e for e in errors)

    def test_port_collision(self, config_dir):
        edit(config_dir / "app.yaml", lambda d: d["monitoring"].update(
            metrics_enabled=True, metrics_port=8080, health_port=8080))

        assert any("collide" in e for e in validate_sanity_checks(config_dir))

    def test_alerts_without_destination(self, config_dir):
        edit(config_dir / "app.yaml", lambda d: d["monitoring"].update(
            alerts_enabled=True, alerts={"min_severity": "warning"}))

        assert any("alerts_enabled" in e for e in validate_sanity_checks(config_dir))

    def test_sanity_skipped_when_schema_fails(self, config_dir):
        def broken(d):
            d["tokens"]["quote"]["address"] = d["tokens"]["base"]["address"]
            d["endpoints"]["rpc_url"] = "rpc"
        edit(config_dir / "app.yaml", broken)

        errors = validate_all_configs(str(config_dir))

        assert errors
        assert not any("same address" in e for e in errors)


def test_load_empty_file_returns_dict(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_yaml_file(path) == {}
