"""Domain records mirrored from the policy manager contract."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EndReason(str, Enum):
    """Why a policy stopped being active."""
    REVOKED = "revoked"
    CANCELLED_BY_FAILURE = "cancelled_by_failure"
    # Executor saw the chain report the policy inactive before the indexer did
    INACTIVE_ON_CHAIN = "inactive_on_chain"


class ChargeStatus(str, Enum):
    """Status of a single charge attempt."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookEventType(str, Enum):
    """Notifications written to the outbox."""
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    POLICY_CREATED = "policy.created"
    POLICY_REVOKED = "policy.revoked"
    POLICY_CANCELLED_BY_FAILURE = "policy.cancelled_by_failure"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class Policy:
    """A subscriber's standing authorization to be billed.

    ``next_charge_at`` is the billing cursor. ``consecutive_failures``
    counts soft-fails since the last success; ``retry_attempts`` counts
    hard-fails since the last success.
    """
    id: str
    chain_id: int
    payer: str
    merchant: str
    charge_amount: int
    spending_cap: int
    interval_seconds: int
    next_charge_at: datetime
    created_at: datetime
    created_block: int = 0
    created_tx: str = ""
    total_spent: int = 0
    last_charged_at: Optional[datetime] = None
    charge_count: int = 1
    active: bool = True
    metadata_url: Optional[str] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None
    consecutive_failures: int = 0
    last_failure_reason: Optional[str] = None
    retry_attempts: int = 0
    needs_attention: bool = False
    cancelled_by_failure: bool = False
    cancelled_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None

    @property
    def unlimited(self) -> bool:
        return self.spending_cap == 0


@dataclass
class ChargeRecord:
    """One attempt to bill a policy."""
    id: int
    policy_id: str
    chain_id: int
    amount: int
    status: ChargeStatus = ChargeStatus.PENDING
    protocol_fee: Optional[int] = None
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    attempt_count: int = 1
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


@dataclass
class OutboxEntry:
    """A queued webhook notification."""
    id: int
    policy_id: str
    event_type: WebhookEventType
    payload: Dict[str, Any]
    charge_id: Optional[int] = None
    status: WebhookStatus = WebhookStatus.PENDING
    attempts: int = 0
    next_attempt_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class ChainStatus:
    chain_id: int
    last_indexed_block: Optional[int] = None
    active_policies: int = 0
    pending_charges: int = 0


@dataclass
class StoreStatus:
    """Aggregate counts used by the health endpoint and ``status`` command."""
    chains: Dict[int, ChainStatus] = field(default_factory=dict)
    webhooks_pending: int = 0
    webhooks_failed: int = 0
