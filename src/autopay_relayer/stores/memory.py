"""In-memory relayer store (dev/tests)."""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from ..models import (
    ChainStatus,
    ChargeRecord,
    ChargeStatus,
    EndReason,
    OutboxEntry,
    Policy,
    StoreStatus,
    WebhookEventType,
    WebhookStatus,
    utc_now,
)

PolicyKey = Tuple[int, str]

_undo_log: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar("memory_store_undo", default=None)


class InMemoryRelayerStore:
    """Process-local store mirroring PostgresRelayerStore semantics.

    Transactions keep an undo log per task; on error only that task's own
    writes are reverted.
    """

    def __init__(self) -> None:
        self._policies: Dict[PolicyKey, Policy] = {}
        self._charges: Dict[int, ChargeRecord] = {}
        self._webhooks: Dict[int, OutboxEntry] = {}
        self._checkpoints: Dict[int, int] = {}
        self._next_charge_id = 1
        self._next_webhook_id = 1

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _undo_log.get() is not None:
            yield
            return

        undo: List[Callable[[], None]] = []
        token = _undo_log.set(undo)
        try:
            yield
        except BaseException:
            for action in reversed(undo):
                action()
            raise
        finally:
            _undo_log.reset(token)

    def _remember(self, action: Callable[[], None]) -> None:
        undo = _undo_log.get()
        if undo is not None:
            undo.append(action)

    def _snapshot_policy(self, key: PolicyKey) -> Optional[Policy]:
        """Fetch a policy for mutation, recording how to restore it."""
        policy = self._policies.get(key)
        if policy is None:
            return None
        before = copy.copy(policy)
        self._remember(lambda: self._policies.__setitem__(key, before))
        return policy

    def _snapshot_charge(self, charge_id: int) -> Optional[ChargeRecord]:
        record = self._charges.get(charge_id)
        if record is None:
            return None
        before = copy.copy(record)
        self._remember(lambda: self._charges.__setitem__(charge_id, before))
        return record

    # -- policies -----------------------------------------------------------

    async def insert_policy(self, policy: Policy) -> bool:
        key = (policy.chain_id, policy.id)
        if key in self._policies:
            return False
        self._policies[key] = copy.copy(policy)
        self._remember(lambda: self._policies.pop(key, None))
        return True

    async def get_policy(self, chain_id: int, policy_id: str) -> Optional[Policy]:
        policy = self._policies.get((chain_id, policy_id))
        return copy.copy(policy) if policy else None

    def _end_policy(self, key: PolicyKey, reason: EndReason, ended_at: datetime) -> Optional[Policy]:
        policy = self._policies.get(key)
        if policy is None:
            return None
        if not policy.active and policy.end_reason != EndReason.INACTIVE_ON_CHAIN:
            return None
        policy = self._snapshot_policy(key)
        policy.active = False
        policy.ended_at = policy.ended_at or ended_at
        policy.end_reason = reason
        policy.claimed_by = None
        policy.claimed_until = None
        return policy

    async def revoke_policy(self, chain_id: int, policy_id: str, ended_at: datetime) -> bool:
        return self._end_policy((chain_id, policy_id), EndReason.REVOKED, ended_at) is not None

    async def mark_policy_cancelled_by_failure(
        self, chain_id: int, policy_id: str, ended_at: datetime
    ) -> bool:
        policy = self._end_policy((chain_id, policy_id), EndReason.CANCELLED_BY_FAILURE, ended_at)
        if policy is None:
            return False
        policy.cancelled_by_failure = True
        policy.cancelled_at = ended_at
        return True

    async def mark_policy_inactive(self, chain_id: int, policy_id: str, ended_at: datetime) -> bool:
        key = (chain_id, policy_id)
        current = self._policies.get(key)
        if current is None or not current.active:
            return False
        policy = self._snapshot_policy(key)
        policy.active = False
        policy.ended_at = ended_at
        policy.end_reason = EndReason.INACTIVE_ON_CHAIN
        return True

    async def update_policy_after_charge(
        self, chain_id: int, policy_id: str, amount: int, charged_at: datetime
    ) -> bool:
        key = (chain_id, policy_id)
        current = self._policies.get(key)
        if current is None:
            return False
        policy = self._snapshot_policy(key)
        policy.last_charged_at = charged_at
        policy.next_charge_at = charged_at + timedelta(seconds=policy.interval_seconds)
        policy.charge_count += 1
        policy.total_spent += amount
        return True

    async def mark_policy_needs_attention(self, chain_id: int, policy_id: str, reason: str) -> None:
        policy = self._snapshot_policy((chain_id, policy_id))
        if policy is not None:
            policy.needs_attention = True
            policy.last_failure_reason = reason

    def _advance_cursor(self, policy: Policy, now: datetime) -> None:
        policy.next_charge_at = max(policy.next_charge_at, now) + timedelta(seconds=policy.interval_seconds)

    async def increment_consecutive_failures(
        self, chain_id: int, policy_id: str, reason: str, now: datetime
    ) -> int:
        policy = self._snapshot_policy((chain_id, policy_id))
        if policy is None:
            return 0
        policy.consecutive_failures += 1
        policy.last_failure_reason = reason
        self._advance_cursor(policy, now)
        return policy.consecutive_failures

    async def reset_consecutive_failures(self, chain_id: int, policy_id: str) -> None:
        policy = self._snapshot_policy((chain_id, policy_id))
        if policy is not None:
            policy.consecutive_failures = 0
            policy.retry_attempts = 0
            policy.needs_attention = False
            policy.last_failure_reason = None

    async def increment_retry_attempts(self, chain_id: int, policy_id: str, reason: str) -> int:
        policy = self._snapshot_policy((chain_id, policy_id))
        if policy is None:
            return 0
        policy.retry_attempts += 1
        policy.last_failure_reason = reason
        return policy.retry_attempts

    async def push_next_charge_at(self, chain_id: int, policy_id: str, now: datetime) -> None:
        policy = self._snapshot_policy((chain_id, policy_id))
        if policy is not None:
            self._advance_cursor(policy, now)

    async def get_policies_due_for_charge(
        self,
        chain_id: int,
        now: datetime,
        limit: int,
        max_consecutive_failures: int,
        merchant_allowlist: Optional[FrozenSet[str]] = None,
    ) -> List[Policy]:
        due = [
            p for p in self._policies.values()
            if p.chain_id == chain_id
            and p.active
            and p.consecutive_failures < max_consecutive_failures
            and p.next_charge_at <= now
            and (p.claimed_until is None or p.claimed_until <= now)
            and (merchant_allowlist is None or p.merchant in merchant_allowlist)
        ]
        due.sort(key=lambda p: p.next_charge_at)
        return [copy.copy(p) for p in due[:limit]]

    async def claim_policy(
        self,
        chain_id: int,
        policy_id: str,
        owner: str,
        now: datetime,
        lease_seconds: int,
        require_due: bool = True,
    ) -> Optional[Policy]:
        key = (chain_id, policy_id)
        current = self._policies.get(key)
        if current is None or not current.active:
            return None
        if require_due and current.next_charge_at > now:
            return None
        if current.claimed_until is not None and current.claimed_until > now and current.claimed_by != owner:
            return None
        policy = self._snapshot_policy(key)
        policy.claimed_by = owner
        policy.claimed_until = now + timedelta(seconds=lease_seconds)
        return copy.copy(policy)

    async def release_policy(self, chain_id: int, policy_id: str, owner: str) -> None:
        key = (chain_id, policy_id)
        current = self._policies.get(key)
        if current is None or current.claimed_by != owner:
            return
        policy = self._snapshot_policy(key)
        policy.claimed_by = None
        policy.claimed_until = None

    # -- charge records -----------------------------------------------------

    async def create_charge_record(
        self, chain_id: int, policy_id: str, amount: int, attempt_count: int = 1
    ) -> int:
        charge_id = self._next_charge_id
        self._next_charge_id += 1
        self._charges[charge_id] = ChargeRecord(
            id=charge_id,
            policy_id=policy_id,
            chain_id=chain_id,
            amount=amount,
            attempt_count=attempt_count,
        )
        self._remember(lambda: self._charges.pop(charge_id, None))
        return charge_id

    async def mark_charge_success(
        self, charge_id: int, tx_hash: str, amount: int, protocol_fee: int
    ) -> None:
        record = self._snapshot_charge(charge_id)
        if record is not None:
            record.status = ChargeStatus.SUCCESS
            record.tx_hash = tx_hash
            record.amount = amount
            record.protocol_fee = protocol_fee
            record.completed_at = utc_now()

    async def mark_charge_failed(
        self,
        charge_id: int,
        error_message: str,
        tx_hash: Optional[str] = None,
        attempt_count: Optional[int] = None,
    ) -> None:
        record = self._snapshot_charge(charge_id)
        if record is not None:
            record.status = ChargeStatus.FAILED
            record.error_message = error_message
            record.tx_hash = tx_hash or record.tx_hash
            if attempt_count is not None:
                record.attempt_count = attempt_count
            record.completed_at = utc_now()

    async def increment_charge_attempt(self, charge_id: int) -> int:
        record = self._snapshot_charge(charge_id)
        if record is None:
            return 0
        record.attempt_count += 1
        return record.attempt_count

    async def get_charge_record(self, charge_id: int) -> Optional[ChargeRecord]:
        record = self._charges.get(charge_id)
        return copy.copy(record) if record else None

    async def list_charge_records(self, chain_id: int, policy_id: str) -> List[ChargeRecord]:
        return [
            copy.copy(r) for r in sorted(self._charges.values(), key=lambda r: r.id)
            if r.chain_id == chain_id and r.policy_id == policy_id
        ]

    # -- webhook outbox -----------------------------------------------------

    async def queue_webhook(
        self,
        policy_id: str,
        event_type: WebhookEventType,
        payload: Dict[str, Any],
        charge_id: Optional[int] = None,
    ) -> int:
        webhook_id = self._next_webhook_id
        self._next_webhook_id += 1
        self._webhooks[webhook_id] = OutboxEntry(
            id=webhook_id,
            policy_id=policy_id,
            event_type=event_type,
            payload=copy.deepcopy(payload),
            charge_id=charge_id,
        )
        self._remember(lambda: self._webhooks.pop(webhook_id, None))
        return webhook_id

    async def list_webhooks(self, status: Optional[WebhookStatus] = None) -> List[OutboxEntry]:
        return [
            copy.copy(w) for w in sorted(self._webhooks.values(), key=lambda w: w.id)
            if status is None or w.status == status
        ]

    # -- checkpoints --------------------------------------------------------

    async def get_last_indexed_block(self, chain_id: int) -> Optional[int]:
        return self._checkpoints.get(chain_id)

    def _set_checkpoint(self, chain_id: int, block_number: int) -> None:
        if chain_id in self._checkpoints:
            before = self._checkpoints[chain_id]
            self._remember(lambda: self._checkpoints.__setitem__(chain_id, before))
        else:
            self._remember(lambda: self._checkpoints.pop(chain_id, None))
        self._checkpoints[chain_id] = block_number

    async def set_last_indexed_block(self, chain_id: int, block_number: int) -> None:
        self._set_checkpoint(chain_id, block_number)

    async def initialize_indexer_state(self, chain_id: int, start_block: int) -> None:
        if chain_id not in self._checkpoints:
            self._set_checkpoint(chain_id, start_block - 1)

    # -- misc ---------------------------------------------------------------

    async def get_status(self, chain_ids: Sequence[int]) -> StoreStatus:
        status = StoreStatus()
        for chain_id in chain_ids:
            status.chains[chain_id] = ChainStatus(
                chain_id=chain_id,
                last_indexed_block=self._checkpoints.get(chain_id),
                active_policies=sum(
                    1 for p in self._policies.values() if p.chain_id == chain_id and p.active
                ),
                pending_charges=sum(
                    1 for c in self._charges.values()
                    if c.chain_id == chain_id and c.status == ChargeStatus.PENDING
                ),
            )
        status.webhooks_pending = sum(1 for w in self._webhooks.values() if w.status == WebhookStatus.PENDING)
        status.webhooks_failed = sum(1 for w in self._webhooks.values() if w.status == WebhookStatus.FAILED)
        return status

    async def migrate(self) -> None:
        return None

    async def close(self) -> None:
        return None
