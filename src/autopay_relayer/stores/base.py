"""Store interface shared by the indexer, executor and status API.

One object covers policies, charge records, the webhook outbox and the
indexer checkpoints so that ``transaction()`` can put a state change and
the notification describing it into the same commit.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Dict, FrozenSet, List, Optional, Protocol, Sequence

from ..models import ChargeRecord, OutboxEntry, Policy, StoreStatus, WebhookEventType, WebhookStatus


class RelayerStore(Protocol):
    def transaction(self) -> AsyncContextManager[None]: ...

    # Policies
    async def insert_policy(self, policy: Policy) -> bool: ...
    async def get_policy(self, chain_id: int, policy_id: str) -> Optional[Policy]: ...
    async def revoke_policy(self, chain_id: int, policy_id: str, ended_at: datetime) -> bool: ...
    async def update_policy_after_charge(
        self, chain_id: int, policy_id: str, amount: int, charged_at: datetime
    ) -> bool: ...
    async def mark_policy_inactive(self, chain_id: int, policy_id: str, ended_at: datetime) -> bool: ...
    async def mark_policy_cancelled_by_failure(
        self, chain_id: int, policy_id: str, ended_at: datetime
    ) -> bool: ...
    async def mark_policy_needs_attention(self, chain_id: int, policy_id: str, reason: str) -> None: ...
    async def increment_consecutive_failures(
        self, chain_id: int, policy_id: str, reason: str, now: datetime
    ) -> int: ...
    async def reset_consecutive_failures(self, chain_id: int, policy_id: str) -> None: ...
    async def increment_retry_attempts(self, chain_id: int, policy_id: str, reason: str) -> int: ...
    async def push_next_charge_at(self, chain_id: int, policy_id: str, now: datetime) -> None: ...
    async def get_policies_due_for_charge(
        self,
        chain_id: int,
        now: datetime,
        limit: int,
        max_consecutive_failures: int,
        merchant_allowlist: Optional[FrozenSet[str]] = None,
    ) -> List[Policy]: ...
    async def claim_policy(
        self,
        chain_id: int,
        policy_id: str,
        owner: str,
        now: datetime,
        lease_seconds: int,
        require_due: bool = True,
    ) -> Optional[Policy]: ...
    async def release_policy(self, chain_id: int, policy_id: str, owner: str) -> None: ...

    # Charge records
    async def create_charge_record(
        self, chain_id: int, policy_id: str, amount: int, attempt_count: int = 1
    ) -> int: ...
    async def mark_charge_success(
        self, charge_id: int, tx_hash: str, amount: int, protocol_fee: int
    ) -> None: ...
    async def mark_charge_failed(
        self,
        charge_id: int,
        error_message: str,
        tx_hash: Optional[str] = None,
        attempt_count: Optional[int] = None,
    ) -> None: ...
    async def increment_charge_attempt(self, charge_id: int) -> int: ...
    async def get_charge_record(self, charge_id: int) -> Optional[ChargeRecord]: ...
    async def list_charge_records(self, chain_id: int, policy_id: str) -> List[ChargeRecord]: ...

    # Webhook outbox
    async def queue_webhook(
        self,
        policy_id: str,
        event_type: WebhookEventType,
        payload: Dict[str, Any],
        charge_id: Optional[int] = None,
    ) -> int: ...
    async def list_webhooks(self, status: Optional[WebhookStatus] = None) -> List[OutboxEntry]: ...

    # Indexer checkpoints
    async def get_last_indexed_block(self, chain_id: int) -> Optional[int]: ...
    async def set_last_indexed_block(self, chain_id: int, block_number: int) -> None: ...
    async def initialize_indexer_state(self, chain_id: int, start_block: int) -> None: ...

    async def get_status(self, chain_ids: Sequence[int]) -> StoreStatus: ...
    async def migrate(self) -> None: ...
    async def close(self) -> None: ...
