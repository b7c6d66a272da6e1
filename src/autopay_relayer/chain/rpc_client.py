"""
JSON-RPC chain client with failover and health checking.

Features:
- Multiple RPC endpoints per chain with automatic failover
- Chain ID validation on first use
- Health-based endpoint selection
- Block timestamp caching (timestamps below the safe head never change)
"""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from ..config import ChainSettings
from ..exceptions import AllEndpointsFailedError, ChainIDMismatchError, RPCError

logger = logging.getLogger(__name__)

# Server errors and rate limits are worth another endpoint
FAILOVER_ERROR_CODES = (-32000, -32005, 429)
TIMESTAMP_CACHE_SIZE = 4096


class EndpointStatus(str, Enum):
    """Health status of an RPC endpoint."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class EndpointHealth:
    """Health tracking for an RPC endpoint."""
    url: str
    priority: int
    status: EndpointStatus = EndpointStatus.UNKNOWN
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    avg_latency_ms: float = 0.0
    last_error: Optional[str] = None
    max_consecutive_failures: int = 3

    def record_success(self, latency_ms: float) -> None:
        self.consecutive_failures = 0
        self.total_requests += 1
        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.9 * self.avg_latency_ms + 0.1 * latency_ms
        self.status = EndpointStatus.HEALTHY

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1
        self.total_failures += 1
        self.last_error = error
        if self.consecutive_failures >= self.max_consecutive_failures:
            self.status = EndpointStatus.UNHEALTHY

    def score(self) -> float:
        """Lower score = tried first."""
        score = float(self.priority * 100)
        if self.status == EndpointStatus.UNHEALTHY:
            score += 10000
        elif self.status == EndpointStatus.UNKNOWN:
            score += 500
        score += self.avg_latency_ms / 10.0
        score += self.consecutive_failures * 100
        return score


class ChainRPCClient:
    """
    Read and write access to one chain over JSON-RPC.

    Implements the indexer's chain client surface (``get_logs``,
    ``get_block_timestamp``, ``get_latest_block``) and the raw calls the
    charger needs to build, send and confirm transactions.
    """

    def __init__(
        self,
        chain: ChainSettings,
        timeout_seconds: float = 30.0,
        validate_chain_id: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._chain = chain
        self._timeout = timeout_seconds
        self._validate_chain_id = validate_chain_id
        self._transport = transport
        self._request_id = 0
        self._http_client: Optional[httpx.AsyncClient] = None
        self._connected = False
        self._timestamps: "OrderedDict[int, datetime]" = OrderedDict()

        self._endpoints = [
            EndpointHealth(url=url, priority=i) for i, url in enumerate(chain.rpc_urls) if url
        ]
        if not self._endpoints:
            raise ValueError(f"No RPC endpoints configured for chain {chain.chain_id}")

        logger.info(
            f"Initialized RPC client for {chain.name} ({chain.chain_id}) "
            f"with {len(self._endpoints)} endpoints"
        )

    @property
    def chain_id(self) -> int:
        return self._chain.chain_id

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def connect(self) -> None:
        """Validate that the endpoints serve the configured chain."""
        if self._connected:
            return

        if self._validate_chain_id:
            result = await self._call_internal("eth_chainId", [])
            chain_id = int(result, 16)
            if chain_id != self._chain.chain_id:
                raise ChainIDMismatchError(expected=self._chain.chain_id, received=chain_id)
            logger.info(f"Chain ID validated for {self._chain.name}: {chain_id}")

        self._connected = True

    def _ordered_endpoints(self) -> List[EndpointHealth]:
        return sorted(self._endpoints, key=lambda e: e.score())

    async def _call_internal(self, method: str, params: Sequence[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": list(params),
        }

        errors: List[Tuple[str, str]] = []
        client = self._get_client()

        for endpoint in self._ordered_endpoints():
            start_time = time.time()
            try:
                response = await client.post(
                    endpoint.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                latency_ms = (time.time() - start_time) * 1000
                response.raise_for_status()
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                error_msg = str(e) or type(e).__name__
                endpoint.record_failure(error_msg)
                errors.append((endpoint.url, error_msg))
                logger.warning(f"RPC call {method} to {endpoint.url} failed: {error_msg}")
                continue

            if "error" in result:
                error = result["error"] or {}
                message = error.get("message", str(error))
                code = error.get("code", 0)

                # Reverts are answers, not endpoint failures
                if code in FAILOVER_ERROR_CODES and "revert" not in message.lower():
                    endpoint.record_failure(message)
                    errors.append((endpoint.url, message))
                    logger.warning(f"RPC error from {endpoint.url}: {message}, trying next endpoint")
                    continue

                endpoint.record_success(latency_ms)
                raise RPCError(
                    message=message,
                    code=code,
                    data=error.get("data"),
                    chain_id=self._chain.chain_id,
                    method=method,
                )

            endpoint.record_success(latency_ms)
            logger.debug(f"RPC call {method} to {endpoint.url} succeeded in {latency_ms:.0f}ms")
            return result.get("result")

        raise AllEndpointsFailedError(chain_id=self._chain.chain_id, errors=errors)

    async def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        """
        Make a JSON-RPC call with automatic failover.

        Raises:
            ChainIDMismatchError: If chain ID validation fails
            RPCError: If the node returns a non-retryable error
            AllEndpointsFailedError: If every endpoint fails
        """
        if not self._connected:
            await self.connect()
        return await self._call_internal(method, params or [])

    # -- chain client surface used by the indexer --------------------------

    async def get_latest_block(self) -> int:
        result = await self.call("eth_blockNumber")
        return int(result, 16)

    async def get_block_timestamp(self, block_number: int) -> datetime:
        """Timestamp of a block, cached by number."""
        cached = self._timestamps.get(block_number)
        if cached is not None:
            return cached

        block = await self.call("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise RPCError(
                f"Block {block_number} not found",
                chain_id=self._chain.chain_id,
                method="eth_getBlockByNumber",
            )
        timestamp = datetime.fromtimestamp(int(block["timestamp"], 16), tz=timezone.utc)

        self._timestamps[block_number] = timestamp
        if len(self._timestamps) > TIMESTAMP_CACHE_SIZE:
            self._timestamps.popitem(last=False)
        return timestamp

    async def get_logs(
        self,
        address: str,
        topics: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        """Logs emitted by ``address`` whose topic0 is any of ``topics``."""
        return await self.call(
            "eth_getLogs",
            [{
                "address": address,
                "topics": [list(topics)],
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
            }],
        ) or []

    # -- raw calls used by the charger -------------------------------------

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        return await self.call("eth_call", [tx, block])

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        result = await self.call("eth_estimateGas", [tx])
        return int(result, 16)

    async def get_nonce(self, address: str, block: str = "pending") -> int:
        result = await self.call("eth_getTransactionCount", [address, block])
        return int(result, 16)

    async def get_max_priority_fee(self) -> Optional[int]:
        """EIP-1559 priority fee suggestion, or None where unsupported."""
        try:
            result = await self.call("eth_maxPriorityFeePerGas")
            return int(result, 16)
        except RPCError:
            return None

    async def get_base_fee(self) -> Optional[int]:
        block = await self.call("eth_getBlockByNumber", ["latest", False])
        if block and block.get("baseFeePerGas"):
            return int(block["baseFeePerGas"], 16)
        return None

    async def send_raw_transaction(self, signed_tx: str) -> str:
        if not signed_tx.startswith("0x"):
            signed_tx = "0x" + signed_tx
        return await self.call("eth_sendRawTransaction", [signed_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "url": e.url,
                "priority": e.priority,
                "status": e.status.value,
                "consecutive_failures": e.consecutive_failures,
                "total_requests": e.total_requests,
                "total_failures": e.total_failures,
                "avg_latency_ms": round(e.avg_latency_ms, 2),
                "last_error": e.last_error,
            }
            for e in self._endpoints
        ]

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        self._connected = False

    async def __aenter__(self) -> "ChainRPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
