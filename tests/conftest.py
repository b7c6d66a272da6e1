"""
Pytest configuration for autopay-relayer tests.
"""
from __future__ import annotations

import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Keep a developer's environment out of the settings under test
os.environ.setdefault("LOG_JSON", "false")
for _var in ("DATABASE_URL", "RELAYER_PRIVATE_KEY", "MERCHANT_ADDRESSES", "CHAINS", "RETRY_PRESET"):
    os.environ.pop(_var, None)

from autopay_relayer.config import ChainSettings, RelayerSettings
from autopay_relayer.stores import InMemoryRelayerStore

from chain_fakes import (
    BASE_TIME,
    MERCHANT,
    PAYER,
    POLICY_MANAGER,
    FakeChainClient,
    FakeCharger,
    MutableClock,
    make_settings,
)


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def chain() -> ChainSettings:
    """Chain with a policy manager configured and small batches."""
    return ChainSettings(
        chain_id=5042002,
        name="arc-testnet",
        rpc_url="http://localhost:8545",
        policy_manager_address=POLICY_MANAGER,
        start_block=100,
        confirmations=2,
        batch_size=50,
    )


@pytest.fixture
def settings(chain) -> RelayerSettings:
    return make_settings(chain)


@pytest.fixture
def store() -> InMemoryRelayerStore:
    return InMemoryRelayerStore()


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient(latest_block=102)


@pytest.fixture
def charger() -> FakeCharger:
    return FakeCharger()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(BASE_TIME + timedelta(hours=1))


@pytest.fixture
def sample_payer():
    return PAYER


@pytest.fixture
def sample_merchant():
    return MERCHANT


@pytest.fixture
def sample_tx_hash():
    """Valid transaction hash for testing."""
    return "0x" + "a" * 64
