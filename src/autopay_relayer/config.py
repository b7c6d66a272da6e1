"""Configuration surface for the relayer.

Values come from the environment (or a ``.env`` file). Nested sections
use a double underscore, e.g. ``EXECUTOR__BATCH_SIZE=25``.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings

from .exceptions import ConfigurationError
from .retry import RETRY_PRESETS, RetryConfig, RetryPreset

ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")

ARC_TESTNET_CHAIN_ID = 5042002
GWEI = 1_000_000_000


class ChainSettings(BaseModel):
    """One chain the relayer indexes and charges on."""
    chain_id: int
    name: str
    rpc_url: str
    fallback_rpc_urls: List[str] = Field(default_factory=list)
    policy_manager_address: str = ""
    start_block: int = 0
    confirmations: Optional[int] = None
    batch_size: Optional[int] = None
    poll_interval_seconds: Optional[float] = None
    enabled: bool = True

    # Arc rejects priority fees below 1 gwei
    min_priority_fee_wei: Optional[int] = None
    min_max_fee_wei: Optional[int] = None

    @field_validator("policy_manager_address")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        v = v.strip().lower()
        if v and not ADDRESS_RE.match(v):
            raise ValueError(f"invalid policy manager address: {v}")
        return v

    @property
    def is_usable(self) -> bool:
        return self.enabled and bool(self.policy_manager_address)

    @property
    def rpc_urls(self) -> List[str]:
        return [self.rpc_url, *self.fallback_rpc_urls]


class IndexerSettings(BaseModel):
    poll_interval_seconds: float = 15.0
    batch_size: int = 9000
    confirmations: int = 2
    batch_delay_seconds: float = 0.3


class ExecutorSettings(BaseModel):
    run_interval_seconds: float = 60.0
    batch_size: int = 10
    confirmation_timeout_seconds: float = 120.0
    lease_seconds: int = 300


class WebhookSettings(BaseModel):
    timeout_seconds: float = 10.0
    max_retries: int = 3


def _default_chains() -> List[ChainSettings]:
    return [
        ChainSettings(
            chain_id=ARC_TESTNET_CHAIN_ID,
            name="arc-testnet",
            rpc_url="https://rpc.testnet.arc.network",
            min_priority_fee_wei=GWEI,
            min_max_fee_wei=GWEI,
        )
    ]


class RelayerSettings(BaseSettings):
    """Main relayer configuration."""

    # Required
    database_url: str = ""
    relayer_private_key: str = ""

    chains: List[ChainSettings] = Field(default_factory=_default_chains)

    indexer: IndexerSettings = Field(default_factory=IndexerSettings)
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)

    # Comma-separated; empty means every merchant
    merchant_addresses: str = ""

    retry_preset: Literal["aggressive", "standard", "conservative", "custom"] = "standard"
    retry_max_retries: int = 3
    retry_backoff_ms: str = "60000,300000,900000"
    retry_max_consecutive_failures: int = 3

    port: int = 3001
    log_level: str = "info"
    log_json: bool = True
    shutdown_timeout_seconds: float = 5.0

    class Config:
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("merchant_addresses")
    @classmethod
    def validate_merchant_addresses(cls, v: str) -> str:
        """Lowercase and validate comma-separated merchant addresses."""
        addresses = [a.strip().lower() for a in v.split(",") if a.strip()]
        for address in addresses:
            if not ADDRESS_RE.match(address):
                raise ValueError(f"Invalid merchant address in MERCHANT_ADDRESSES: {address}")
        return ",".join(addresses)

    @field_validator("relayer_private_key")
    @classmethod
    def validate_private_key(cls, v: str) -> str:
        v = v.strip()
        if v and not v.startswith("0x"):
            raise ValueError("RELAYER_PRIVATE_KEY must start with 0x")
        return v

    @property
    def merchant_allowlist(self) -> Optional[FrozenSet[str]]:
        """Allowed merchants, or None when every merchant is processed."""
        if not self.merchant_addresses:
            return None
        return frozenset(self.merchant_addresses.split(","))

    def is_merchant_allowed(self, merchant: str) -> bool:
        allowlist = self.merchant_allowlist
        if allowlist is None:
            return True
        return merchant.lower() in allowlist

    def enabled_chains(self) -> List[ChainSettings]:
        return [c for c in self.chains if c.is_usable]

    def get_chain(self, chain_id: int) -> Optional[ChainSettings]:
        for chain in self.chains:
            if chain.chain_id == chain_id:
                return chain
        return None

    def confirmations_for(self, chain: ChainSettings) -> int:
        if chain.confirmations is not None:
            return chain.confirmations
        return self.indexer.confirmations

    def batch_size_for(self, chain: ChainSettings) -> int:
        return chain.batch_size or self.indexer.batch_size

    def poll_interval_for(self, chain: ChainSettings) -> float:
        return chain.poll_interval_seconds or self.indexer.poll_interval_seconds

    @property
    def retry(self) -> RetryConfig:
        """Resolve the retry preset (or the custom values) into a RetryConfig."""
        if self.retry_preset == RetryPreset.CUSTOM.value:
            try:
                backoff = tuple(int(s.strip()) for s in self.retry_backoff_ms.split(",") if s.strip())
                return RetryConfig(
                    preset=RetryPreset.CUSTOM,
                    max_retries=self.retry_max_retries,
                    backoff_ms=backoff,
                    max_consecutive_failures=self.retry_max_consecutive_failures,
                )
            except ValueError as e:
                raise ConfigurationError(f"Invalid custom retry config: {e}", setting="RETRY_BACKOFF_MS") from e
        return RETRY_PRESETS[self.retry_preset]

    def require_runtime(self) -> None:
        """Check the settings needed to actually run against a database and chain."""
        if not self.database_url:
            raise ConfigurationError(
                "Missing required environment variable: DATABASE_URL", setting="DATABASE_URL"
            )
        if not self.relayer_private_key:
            raise ConfigurationError(
                "Missing required environment variable: RELAYER_PRIVATE_KEY",
                setting="RELAYER_PRIVATE_KEY",
            )


@lru_cache
def load_settings() -> RelayerSettings:
    """Load settings once per process."""
    try:
        return RelayerSettings()
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid relayer configuration: {e}") from e
