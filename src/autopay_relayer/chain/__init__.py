"""Chain access: JSON-RPC client, event decoding and the charge operation."""
from __future__ import annotations

from .charger import (
    CancelResult,
    ChargeOperation,
    ChargeOutcome,
    ChargeOutcomeKind,
    PolicyManagerClient,
)
from .events import (
    ChainEvent,
    ChargeFailedEvent,
    ChargeSucceededEvent,
    PolicyCancelledByFailureEvent,
    PolicyCreatedEvent,
    PolicyRevokedEvent,
    event_topics,
    parse_log,
)
from .rpc_client import ChainRPCClient

__all__ = [
    "CancelResult",
    "ChargeOperation",
    "ChargeOutcome",
    "ChargeOutcomeKind",
    "PolicyManagerClient",
    "ChainEvent",
    "ChargeFailedEvent",
    "ChargeSucceededEvent",
    "PolicyCancelledByFailureEvent",
    "PolicyCreatedEvent",
    "PolicyRevokedEvent",
    "event_topics",
    "parse_log",
    "ChainRPCClient",
]
