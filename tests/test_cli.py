"""
Tests for the command line.
"""
from __future__ import annotations

import json
import logging

import pytest
from click.testing import CliRunner

from autopay_relayer.cli import cli
from autopay_relayer.config import load_settings

from chain_fakes import POLICY_MANAGER


@pytest.fixture
def runner(monkeypatch):
    root_logger = logging.getLogger()
    handlers, level = root_logger.handlers[:], root_logger.level
    load_settings.cache_clear()
    monkeypatch.setenv("DATABASE_URL", "memory://")
    yield CliRunner()
    load_settings.cache_clear()
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


@pytest.fixture
def configured_chain(monkeypatch):
    monkeypatch.setenv("CHAINS", json.dumps([{
        "chain_id": 5042002,
        "name": "arc-testnet",
        "rpc_url": "http://localhost:8545",
        "policy_manager_address": POLICY_MANAGER,
    }]))


class TestCommands:
    """Tests for commands that need no chain access."""

    def test_config_retry(self, runner, monkeypatch):
        monkeypatch.setenv("RETRY_PRESET", "aggressive")
        result = runner.invoke(cli, ["config-retry"], obj={})

        assert result.exit_code == 0
        assert "preset=aggressive" in result.output

    def test_chains_lists_disabled_default(self, runner):
        result = runner.invoke(cli, ["chains"], obj={})

        assert result.exit_code == 0
        assert "arc-testnet" in result.output
        assert "Disabled" in result.output

    def test_migrate_memory_store(self, runner):
        result = runner.invoke(cli, ["migrate"], obj={})

        assert result.exit_code == 0
        assert "Migrations applied" in result.output

    def test_status_json(self, runner, configured_chain):
        """A fresh store has no checkpoint, so the relayer reports degraded."""
        result = runner.invoke(cli, ["--log-level", "error", "status", "--json"], obj={})

        assert result.exit_code == 0
        body = json.loads(result.output)
        assert body["status"] == "degraded"
        assert body["chains"][0]["lastIndexedBlock"] is None


class TestValidation:
    """Tests for argument and configuration errors."""

    def test_charge_rejects_bad_policy_id(self, runner, configured_chain):
        result = runner.invoke(cli, ["charge", "0x1234"], obj={})

        assert result.exit_code == 1
        assert "POLICY_ID must be" in result.output

    def test_unknown_chain(self, runner, configured_chain):
        result = runner.invoke(cli, ["index", "--chain-id", "1"], obj={})

        assert result.exit_code == 1
        assert "Chain 1 is not configured" in result.output

    def test_invalid_configuration(self, runner, monkeypatch):
        monkeypatch.setenv("MERCHANT_ADDRESSES", "nope")
        result = runner.invoke(cli, ["chains"], obj={})

        assert result.exit_code == 1
        assert "Invalid relayer configuration" in result.output

    def test_missing_database_url(self, runner, monkeypatch):
        monkeypatch.delenv("DATABASE_URL")
        result = runner.invoke(cli, ["migrate"], obj={})

        assert result.exit_code == 1
        assert "DATABASE_URL" in result.output
