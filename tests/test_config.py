"""
Tests for relayer settings.
"""
from __future__ import annotations

import json

import pytest

from autopay_relayer.config import ARC_TESTNET_CHAIN_ID, ChainSettings, RelayerSettings, load_settings
from autopay_relayer.exceptions import ConfigurationError
from autopay_relayer.retry import RetryPreset

from chain_fakes import MERCHANT, POLICY_MANAGER, make_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    load_settings.cache_clear()
    yield
    load_settings.cache_clear()


class TestEnvironment:
    """Tests for loading settings from the environment."""

    def test_defaults(self):
        """Default chain should be Arc testnet and disabled until configured."""
        settings = RelayerSettings(_env_file=None)

        assert settings.port == 3001
        assert settings.chains[0].chain_id == ARC_TESTNET_CHAIN_ID
        assert settings.enabled_chains() == []
        assert settings.merchant_allowlist is None
        assert settings.retry.preset == RetryPreset.STANDARD

    def test_chains_and_nested_sections(self, monkeypatch):
        """CHAINS JSON and double-underscore sections should be honoured."""
        monkeypatch.setenv("CHAINS", json.dumps([{
            "chain_id": 8453,
            "name": "base",
            "rpc_url": "https://base.example",
            "policy_manager_address": POLICY_MANAGER.upper().replace("0X", "0x"),
            "confirmations": 5,
        }]))
        monkeypatch.setenv("EXECUTOR__BATCH_SIZE", "25")
        monkeypatch.setenv("INDEXER__CONFIRMATIONS", "3")

        settings = load_settings()

        (chain,) = settings.enabled_chains()
        assert chain.policy_manager_address == POLICY_MANAGER
        assert settings.confirmations_for(chain) == 5
        assert settings.executor.batch_size == 25
        assert settings.indexer.confirmations == 3

    def test_merchant_allowlist(self, monkeypatch):
        monkeypatch.setenv("MERCHANT_ADDRESSES", f" {MERCHANT.upper().replace('0X', '0x')} , 0x{'44' * 20}")
        settings = load_settings()

        assert settings.merchant_allowlist == frozenset({MERCHANT, "0x" + "44" * 20})
        assert settings.is_merchant_allowed(MERCHANT) is True
        assert settings.is_merchant_allowed("0x" + "55" * 20) is False

    def test_invalid_merchant_is_configuration_error(self, monkeypatch):
        monkeypatch.setenv("MERCHANT_ADDRESSES", "not-an-address")
        with pytest.raises(ConfigurationError):
            load_settings()

    def test_private_key_requires_prefix(self, monkeypatch):
        monkeypatch.setenv("RELAYER_PRIVATE_KEY", "11" * 32)
        with pytest.raises(ConfigurationError):
            load_settings()


class TestRetrySettings:
    """Tests for retry resolution."""

    def test_preset(self, chain):
        settings = make_settings(chain, retry_preset="conservative")
        assert settings.retry.max_retries == 5

    def test_custom(self, chain):
        settings = make_settings(
            chain,
            retry_preset="custom",
            retry_max_retries=4,
            retry_backoff_ms="1000, 2000",
            retry_max_consecutive_failures=2,
        )

        retry = settings.retry
        assert retry.preset == RetryPreset.CUSTOM
        assert retry.max_retries == 4
        assert retry.backoff_ms == (1000, 2000)
        assert retry.max_consecutive_failures == 2

    def test_custom_with_bad_backoff(self, chain):
        settings = make_settings(chain, retry_preset="custom", retry_backoff_ms="1000,soon")
        with pytest.raises(ConfigurationError):
            settings.retry


class TestRuntimeRequirements:
    """Tests for require_runtime and per-chain overrides."""

    def test_missing_database_url(self, chain):
        settings = make_settings(chain, database_url="")
        with pytest.raises(ConfigurationError) as exc_info:
            settings.require_runtime()
        assert exc_info.value.details["setting"] == "DATABASE_URL"

    def test_missing_private_key(self, chain):
        settings = make_settings(chain, relayer_private_key="")
        with pytest.raises(ConfigurationError):
            settings.require_runtime()

    def test_chain_overrides_fall_back_to_indexer_defaults(self, settings):
        chain = ChainSettings(chain_id=1, name="l1", rpc_url="http://x", policy_manager_address=POLICY_MANAGER)

        assert settings.confirmations_for(chain) == settings.indexer.confirmations
        assert settings.batch_size_for(chain) == settings.indexer.batch_size
        assert settings.poll_interval_for(chain) == settings.indexer.poll_interval_seconds

    def test_invalid_policy_manager_address(self):
        with pytest.raises(ValueError):
            ChainSettings(chain_id=1, name="l1", rpc_url="http://x", policy_manager_address="0x1234")
