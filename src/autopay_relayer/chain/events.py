"""
Decoding of policy manager logs into typed events.

Only the five policy manager events are recognised. Anything else,
including logs whose data fails to decode, yields ``None`` so that new
contract events never break an older indexer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Type, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

logger = logging.getLogger(__name__)

HexLike = Union[str, bytes]


@dataclass(frozen=True)
class ChainEvent:
    """Fields shared by every decoded log."""
    name: ClassVar[str] = ""

    policy_id: str
    block_number: int
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class PolicyCreatedEvent(ChainEvent):
    name: ClassVar[str] = "PolicyCreated"

    payer: str
    merchant: str
    charge_amount: int
    interval: int
    spending_cap: int
    metadata_url: str


@dataclass(frozen=True)
class PolicyRevokedEvent(ChainEvent):
    name: ClassVar[str] = "PolicyRevoked"

    payer: str
    merchant: str
    end_time: int


@dataclass(frozen=True)
class ChargeSucceededEvent(ChainEvent):
    name: ClassVar[str] = "ChargeSucceeded"

    payer: str
    merchant: str
    amount: int
    protocol_fee: int


@dataclass(frozen=True)
class ChargeFailedEvent(ChainEvent):
    name: ClassVar[str] = "ChargeFailed"

    reason: str


@dataclass(frozen=True)
class PolicyCancelledByFailureEvent(ChainEvent):
    name: ClassVar[str] = "PolicyCancelledByFailure"

    payer: str
    merchant: str
    consecutive_failures: int
    end_time: int


@dataclass(frozen=True)
class EventSpec:
    """ABI layout of one event: indexed args come from topics, the rest from data."""
    event_cls: Type[ChainEvent]
    indexed: Tuple[Tuple[str, str], ...]
    data: Tuple[Tuple[str, str], ...]

    @property
    def signature(self) -> str:
        types = ",".join(t for _, t in self.indexed + self.data)
        return f"{self.event_cls.name}({types})"

    @property
    def topic(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))


EVENT_SPECS: Tuple[EventSpec, ...] = (
    EventSpec(
        PolicyCreatedEvent,
        indexed=(("policy_id", "bytes32"), ("payer", "address"), ("merchant", "address")),
        data=(
            ("charge_amount", "uint128"),
            ("interval", "uint32"),
            ("spending_cap", "uint128"),
            ("metadata_url", "string"),
        ),
    ),
    EventSpec(
        PolicyRevokedEvent,
        indexed=(("policy_id", "bytes32"), ("payer", "address"), ("merchant", "address")),
        data=(("end_time", "uint32"),),
    ),
    EventSpec(
        ChargeSucceededEvent,
        indexed=(("policy_id", "bytes32"), ("payer", "address"), ("merchant", "address")),
        data=(("amount", "uint128"), ("protocol_fee", "uint128")),
    ),
    EventSpec(
        ChargeFailedEvent,
        indexed=(("policy_id", "bytes32"),),
        data=(("reason", "string"),),
    ),
    EventSpec(
        PolicyCancelledByFailureEvent,
        indexed=(("policy_id", "bytes32"), ("payer", "address"), ("merchant", "address")),
        data=(("consecutive_failures", "uint8"), ("end_time", "uint32")),
    ),
)

SPECS_BY_TOPIC: Dict[str, EventSpec] = {spec.topic: spec for spec in EVENT_SPECS}
SPECS_BY_NAME: Dict[str, EventSpec] = {spec.event_cls.name: spec for spec in EVENT_SPECS}


def event_topics() -> List[str]:
    """topic0 values of every event the indexer subscribes to."""
    return [spec.topic for spec in EVENT_SPECS]


def topic_for(name: str) -> str:
    return SPECS_BY_NAME[name].topic


def to_bytes(value: HexLike) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def to_hex(value: HexLike) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value.lower() if value.startswith("0x") else "0x" + value.lower()


def to_int(value: Union[int, str, None]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if value.startswith("0x") else int(value)


def _normalize(abi_type: str, value: Any) -> Any:
    if abi_type == "bytes32":
        return "0x" + value.hex()
    if abi_type == "address":
        return value.lower()
    return value


def decode_event_data(name: str, data: HexLike) -> Dict[str, Any]:
    """Decode the non-indexed arguments of a named event."""
    spec = SPECS_BY_NAME[name]
    types = [t for _, t in spec.data]
    values = decode(types, to_bytes(data))
    return {field: _normalize(t, v) for (field, t), v in zip(spec.data, values)}


def parse_log(log: Dict[str, Any]) -> Optional[ChainEvent]:
    """Decode a raw JSON-RPC log into a typed event.

    Returns:
        The decoded event, or None if the topic is unknown or the
        payload does not match the expected layout.
    """
    topics: Sequence[HexLike] = log.get("topics") or []
    if not topics:
        return None

    spec = SPECS_BY_TOPIC.get(to_hex(topics[0]))
    if spec is None:
        return None

    if len(topics) != len(spec.indexed) + 1:
        logger.debug(
            f"Skipping {spec.event_cls.name} log with {len(topics)} topics",
            extra={"tx_hash": log.get("transactionHash")},
        )
        return None

    try:
        fields: Dict[str, Any] = {}
        for (field, abi_type), topic in zip(spec.indexed, topics[1:]):
            (value,) = decode([abi_type], to_bytes(topic))
            fields[field] = _normalize(abi_type, value)

        data_types = [t for _, t in spec.data]
        values = decode(data_types, to_bytes(log.get("data") or "0x"))
        for (field, abi_type), value in zip(spec.data, values):
            fields[field] = _normalize(abi_type, value)
    except (DecodingError, ValueError, TypeError) as e:
        logger.debug(
            f"Undecodable {spec.event_cls.name} log: {e}",
            extra={"tx_hash": log.get("transactionHash")},
        )
        return None

    return spec.event_cls(
        block_number=to_int(log.get("blockNumber")),
        tx_hash=to_hex(log.get("transactionHash") or "0x"),
        log_index=to_int(log.get("logIndex")),
        **fields,
    )
