"""EIP-1559 fee estimation with per-chain floors."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..config import GWEI, ChainSettings
from .rpc_client import ChainRPCClient

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY_FEE = 1 * GWEI
DEFAULT_MAX_FEE = 50 * GWEI
GAS_LIMIT_BUFFER = 1.2


@dataclass(frozen=True)
class GasFees:
    """Fee caps for a type-2 transaction."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def as_tx_fields(self) -> Dict[str, Any]:
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


def apply_fee_floors(
    max_fee: int,
    priority_fee: int,
    chain: ChainSettings,
) -> GasFees:
    """Raise fees to the chain's minimums; max fee always ends above the priority fee."""
    if chain.min_priority_fee_wei is not None and priority_fee < chain.min_priority_fee_wei:
        priority_fee = chain.min_priority_fee_wei
    if chain.min_max_fee_wei is not None and max_fee < chain.min_max_fee_wei:
        max_fee = chain.min_max_fee_wei
    if max_fee <= priority_fee:
        max_fee = priority_fee + GWEI
    return GasFees(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority_fee)


async def estimate_fees(rpc: ChainRPCClient, chain: ChainSettings) -> GasFees:
    """Suggested fees from the node, adjusted to the chain's floors."""
    priority_fee: Optional[int] = await rpc.get_max_priority_fee()
    if priority_fee is None:
        priority_fee = DEFAULT_PRIORITY_FEE

    base_fee = await rpc.get_base_fee()
    max_fee = base_fee * 2 + priority_fee if base_fee is not None else DEFAULT_MAX_FEE

    fees = apply_fee_floors(max_fee, priority_fee, chain)
    logger.debug(
        "Estimated gas fees",
        extra={
            "max_fee_per_gas": fees.max_fee_per_gas,
            "max_priority_fee_per_gas": fees.max_priority_fee_per_gas,
        },
    )
    return fees


def buffered_gas_limit(estimate: int) -> int:
    return int(estimate * GAS_LIMIT_BUFFER)
