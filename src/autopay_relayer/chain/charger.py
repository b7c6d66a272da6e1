"""
On-chain charge operation against the policy manager contract.

``PolicyManagerClient.charge`` never raises for chain-side problems; it
classifies the attempt as success, soft-fail or hard-fail so that the
executor can drive the policy state machine from a single result.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import Web3

from ..config import ChainSettings
from ..exceptions import ChainError, ConfirmationTimeoutError, RPCError
from .events import decode_event_data, to_bytes, to_int, topic_for
from .gas import buffered_gas_limit, estimate_fees
from .rpc_client import ChainRPCClient

logger = logging.getLogger(__name__)


def _selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


CAN_CHARGE_SELECTOR = _selector("canCharge(bytes32)")
CHARGE_SELECTOR = _selector("charge(bytes32)")
CANCEL_FAILED_POLICY_SELECTOR = _selector("cancelFailedPolicy(bytes32)")

# Error(string)
ERROR_STRING_SELECTOR = "0x08c379a0"

CUSTOM_ERRORS: Dict[str, str] = {
    "0x" + _selector(f"{name}()").hex(): name
    for name in (
        "InsufficientAllowance",
        "InsufficientBalance",
        "InvalidInterval",
        "InvalidAmount",
        "InvalidMerchant",
        "PolicyNotActive",
        "NotPolicyOwner",
        "SpendingCapExceeded",
        "TooSoonToCharge",
    )
}


class ChargeOutcomeKind(str, Enum):
    SUCCESS = "success"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"


@dataclass(frozen=True)
class ChargeOutcome:
    """Result of one charge attempt."""
    kind: ChargeOutcomeKind
    tx_hash: Optional[str] = None
    amount: Optional[int] = None
    protocol_fee: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, tx_hash: str, amount: int, protocol_fee: int) -> "ChargeOutcome":
        return cls(ChargeOutcomeKind.SUCCESS, tx_hash=tx_hash, amount=amount, protocol_fee=protocol_fee)

    @classmethod
    def soft_fail(cls, reason: str, tx_hash: Optional[str] = None) -> "ChargeOutcome":
        return cls(ChargeOutcomeKind.SOFT_FAIL, tx_hash=tx_hash, reason=reason)

    @classmethod
    def hard_fail(cls, reason: str, tx_hash: Optional[str] = None) -> "ChargeOutcome":
        return cls(ChargeOutcomeKind.HARD_FAIL, tx_hash=tx_hash, reason=reason)


@dataclass(frozen=True)
class CancelResult:
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


class ChargeOperation(Protocol):
    """What the executor needs from a chain to bill a policy."""

    async def can_charge(self, policy_id: str) -> Tuple[bool, str]: ...
    async def charge(self, policy_id: str) -> ChargeOutcome: ...
    async def cancel_failed_policy(self, policy_id: str) -> CancelResult: ...


def describe_revert(error: RPCError) -> str:
    """Turn an eth_call/estimateGas error into a readable revert reason."""
    data: Any = error.data
    if isinstance(data, dict):
        data = data.get("data")

    detail = None
    if isinstance(data, str) and data.startswith("0x") and len(data) >= 10:
        selector = data[:10].lower()
        if selector == ERROR_STRING_SELECTOR:
            try:
                (detail,) = decode(["string"], to_bytes(data[10:]))
            except (DecodingError, ValueError):
                detail = None
        else:
            detail = CUSTOM_ERRORS.get(selector)

    if detail and detail not in error.message:
        return f"{error.message}: {detail}"
    return error.message


def _encode_policy_call(selector: bytes, policy_id: str) -> str:
    return "0x" + (selector + encode(["bytes32"], [to_bytes(policy_id)])).hex()


class PolicyManagerClient:
    """
    Charges policies through the policy manager contract on one chain.

    Features:
    - Pre-flight ``canCharge`` check before spending gas
    - Simulation of ``charge`` to surface revert reasons
    - Bounded confirmation wait (a timeout is a hard-fail)
    - Receipt inspection for ChargeSucceeded / ChargeFailed logs
    """

    def __init__(
        self,
        rpc: ChainRPCClient,
        chain: ChainSettings,
        private_key: str,
        confirmation_timeout_seconds: float = 120.0,
        receipt_poll_interval: float = 2.0,
    ):
        self._rpc = rpc
        self._chain = chain
        self._account = Account.from_key(private_key)
        self._contract = Web3.to_checksum_address(chain.policy_manager_address)
        self._confirmation_timeout = confirmation_timeout_seconds
        self._poll_interval = receipt_poll_interval

    @property
    def address(self) -> str:
        return self._account.address

    async def can_charge(self, policy_id: str) -> Tuple[bool, str]:
        """Ask the contract whether a charge would currently succeed."""
        result = await self._rpc.eth_call({
            "from": self._account.address,
            "to": self._contract,
            "data": _encode_policy_call(CAN_CHARGE_SELECTOR, policy_id),
        })
        ok, reason = decode(["bool", "string"], to_bytes(result))
        return bool(ok), reason

    async def charge(self, policy_id: str) -> ChargeOutcome:
        """
        Attempt to charge a policy.

        Returns:
            SUCCESS with tx hash, amount and fee; SOFT_FAIL when the payer
            cannot currently cover the charge; HARD_FAIL for everything else
            including a confirmation timeout.
        """
        try:
            ok, reason = await self.can_charge(policy_id)
            if not ok:
                if "insufficient" in reason.lower():
                    logger.info(f"Pre-flight rejected charge: {reason}")
                    return ChargeOutcome.soft_fail(reason)
                return ChargeOutcome.hard_fail(reason or "canCharge returned false")

            receipt = await self._send(_encode_policy_call(CHARGE_SELECTOR, policy_id))
        except RPCError as e:
            return ChargeOutcome.hard_fail(describe_revert(e))
        except (ChainError, httpx.HTTPError, DecodingError) as e:
            return ChargeOutcome.hard_fail(str(e))

        return self._classify_receipt(receipt)

    async def cancel_failed_policy(self, policy_id: str) -> CancelResult:
        """Cancel a policy on-chain after repeated soft-fails. Never raises for chain errors."""
        try:
            receipt = await self._send(_encode_policy_call(CANCEL_FAILED_POLICY_SELECTOR, policy_id))
        except RPCError as e:
            return CancelResult(success=False, error=describe_revert(e))
        except (ChainError, httpx.HTTPError) as e:
            return CancelResult(success=False, error=str(e))

        tx_hash = receipt.get("transactionHash")
        if to_int(receipt.get("status")) != 1:
            return CancelResult(success=False, tx_hash=tx_hash, error="transaction reverted")
        return CancelResult(success=True, tx_hash=tx_hash)

    async def _send(self, data: str) -> Dict[str, Any]:
        """Simulate, sign, broadcast and wait for the receipt of a contract call."""
        call = {"from": self._account.address, "to": self._contract, "data": data}

        # Raises RPCError with the revert payload if the call would fail
        await self._rpc.eth_call(call)

        gas_limit = buffered_gas_limit(await self._rpc.estimate_gas(call))
        fees = await estimate_fees(self._rpc, self._chain)
        nonce = await self._rpc.get_nonce(self._account.address)

        tx = {
            "type": 2,
            "chainId": self._chain.chain_id,
            "nonce": nonce,
            "to": self._contract,
            "value": 0,
            "data": data,
            "gas": gas_limit,
            **fees.as_tx_fields(),
        }
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._rpc.send_raw_transaction(Web3.to_hex(signed.raw_transaction))
        logger.info(f"Transaction submitted: {tx_hash}")

        return await self._wait_for_receipt(tx_hash)

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(self._poll_receipt(tx_hash), timeout=self._confirmation_timeout)
        except asyncio.TimeoutError as e:
            raise ConfirmationTimeoutError(
                tx_hash, self._confirmation_timeout, chain_id=self._chain.chain_id
            ) from e

    async def _poll_receipt(self, tx_hash: str) -> Dict[str, Any]:
        while True:
            receipt = await self._rpc.get_transaction_receipt(tx_hash)
            if receipt:
                return receipt
            await asyncio.sleep(self._poll_interval)

    def _classify_receipt(self, receipt: Dict[str, Any]) -> ChargeOutcome:
        tx_hash = receipt.get("transactionHash")
        if to_int(receipt.get("status")) != 1:
            return ChargeOutcome.hard_fail("transaction reverted", tx_hash=tx_hash)

        succeeded_topic = topic_for("ChargeSucceeded")
        failed_topic = topic_for("ChargeFailed")
        succeeded = None
        failed = None
        for log in receipt.get("logs") or []:
            if (log.get("address") or "").lower() != self._chain.policy_manager_address:
                continue
            topics = log.get("topics") or []
            if not topics:
                continue
            topic0 = topics[0].lower()
            if topic0 == succeeded_topic:
                succeeded = log
            elif topic0 == failed_topic:
                failed = log

        if failed is not None and succeeded is None:
            try:
                reason = decode_event_data("ChargeFailed", failed.get("data") or "0x")["reason"]
            except (DecodingError, ValueError):
                reason = "charge failed on-chain"
            return ChargeOutcome.soft_fail(reason, tx_hash=tx_hash)

        if succeeded is None:
            logger.warning(
                f"Receipt for {tx_hash} succeeded without a charge event; using the policy amount",
                extra={"tx_hash": tx_hash},
            )
            return ChargeOutcome.success(tx_hash=tx_hash, amount=0, protocol_fee=0)

        values = decode_event_data("ChargeSucceeded", succeeded.get("data") or "0x")
        return ChargeOutcome.success(
            tx_hash=tx_hash,
            amount=values["amount"],
            protocol_fee=values["protocol_fee"],
        )
