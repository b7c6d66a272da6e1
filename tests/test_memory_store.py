"""
Tests for the in-memory relayer store.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from autopay_relayer.models import ChargeStatus, EndReason, WebhookEventType, WebhookStatus
from autopay_relayer.stores import InMemoryRelayerStore, PostgresRelayerStore, create_store

from chain_fakes import BASE_TIME, OTHER_MERCHANT, make_policy, policy_id

CHAIN_ID = 5042002


class TestTransactions:
    """Tests for transaction rollback."""

    @pytest.mark.asyncio
    async def test_rollback_reverts_every_write(self, store):
        """An error inside a transaction should undo policy, charge and webhook writes."""
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME))

        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.insert_policy(make_policy(policy_id(2), next_charge_at=BASE_TIME))
                await store.increment_consecutive_failures(CHAIN_ID, policy_id(1), "boom", BASE_TIME)
                await store.create_charge_record(CHAIN_ID, policy_id(1), 5)
                await store.queue_webhook(policy_id(1), WebhookEventType.CHARGE_FAILED, {"event": "charge.failed"})
                await store.set_last_indexed_block(CHAIN_ID, 42)
                raise RuntimeError("boom")

        assert await store.get_policy(CHAIN_ID, policy_id(2)) is None
        policy = await store.get_policy(CHAIN_ID, policy_id(1))
        assert policy.consecutive_failures == 0
        assert policy.next_charge_at == BASE_TIME
        assert await store.list_charge_records(CHAIN_ID, policy_id(1)) == []
        assert await store.list_webhooks() == []
        assert await store.get_last_indexed_block(CHAIN_ID) is None

    @pytest.mark.asyncio
    async def test_commit_keeps_writes(self, store):
        async with store.transaction():
            await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME))
            async with store.transaction():
                await store.queue_webhook(policy_id(1), WebhookEventType.POLICY_CREATED, {})

        assert await store.get_policy(CHAIN_ID, policy_id(1)) is not None
        assert len(await store.list_webhooks(WebhookStatus.PENDING)) == 1

    @pytest.mark.asyncio
    async def test_returned_objects_are_copies(self, store):
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME))
        policy = await store.get_policy(CHAIN_ID, policy_id(1))
        policy.active = False

        assert (await store.get_policy(CHAIN_ID, policy_id(1))).active is True


class TestPolicies:
    """Tests for policy mutations."""

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, store):
        policy = make_policy(policy_id(1), next_charge_at=BASE_TIME)
        assert await store.insert_policy(policy) is True
        assert await store.insert_policy(policy) is False

    @pytest.mark.asyncio
    async def test_end_transitions_are_one_way(self, store):
        """Ending an already ended policy should report no change; charges still count."""
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME))

        assert await store.revoke_policy(CHAIN_ID, policy_id(1), BASE_TIME) is True
        assert await store.revoke_policy(CHAIN_ID, policy_id(1), BASE_TIME) is False
        assert await store.mark_policy_cancelled_by_failure(CHAIN_ID, policy_id(1), BASE_TIME) is False
        assert await store.update_policy_after_charge(CHAIN_ID, policy_id(1), 1, BASE_TIME) is True

        policy = await store.get_policy(CHAIN_ID, policy_id(1))
        assert policy.end_reason == EndReason.REVOKED
        assert policy.active is False
        assert policy.charge_count == 2

    @pytest.mark.asyncio
    async def test_cursor_advance_uses_later_of_cursor_and_now(self, store):
        """Failures should push the cursor one interval past max(cursor, now)."""
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME, interval_seconds=60))

        await store.push_next_charge_at(CHAIN_ID, policy_id(1), BASE_TIME - timedelta(hours=1))
        assert (await store.get_policy(CHAIN_ID, policy_id(1))).next_charge_at == BASE_TIME + timedelta(seconds=60)

        later = BASE_TIME + timedelta(hours=1)
        await store.increment_consecutive_failures(CHAIN_ID, policy_id(1), "x", later)
        assert (await store.get_policy(CHAIN_ID, policy_id(1))).next_charge_at == later + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_due_query(self, store):
        """Due query should filter and order by cursor."""
        now = BASE_TIME
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=now - timedelta(minutes=1)))
        await store.insert_policy(make_policy(policy_id(2), next_charge_at=now - timedelta(minutes=5)))
        await store.insert_policy(make_policy(policy_id(3), next_charge_at=now + timedelta(minutes=5)))
        await store.insert_policy(make_policy(policy_id(4), next_charge_at=now, consecutive_failures=3))
        await store.insert_policy(make_policy(policy_id(5), next_charge_at=now, merchant=OTHER_MERCHANT))
        await store.insert_policy(make_policy(policy_id(6), next_charge_at=now, active=False, ended_at=now))
        await store.insert_policy(make_policy(policy_id(7), next_charge_at=now, chain_id=1))

        due = await store.get_policies_due_for_charge(CHAIN_ID, now, 10, 3)
        assert [p.id for p in due] == [policy_id(2), policy_id(1), policy_id(5)]

        allowlist = frozenset({make_policy(policy_id(1), now).merchant})
        due = await store.get_policies_due_for_charge(CHAIN_ID, now, 1, 3, allowlist)
        assert [p.id for p in due] == [policy_id(2)]

    @pytest.mark.asyncio
    async def test_leases(self, store):
        """A live lease should hide the policy and block other owners."""
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME))

        claimed = await store.claim_policy(CHAIN_ID, policy_id(1), "a", BASE_TIME, 300)
        assert claimed.claimed_by == "a"
        assert claimed.claimed_until == BASE_TIME + timedelta(seconds=300)
        assert await store.claim_policy(CHAIN_ID, policy_id(1), "b", BASE_TIME, 300) is None
        assert await store.get_policies_due_for_charge(CHAIN_ID, BASE_TIME, 10, 3) == []

        # Expired leases can be taken over
        later = BASE_TIME + timedelta(seconds=301)
        assert (await store.claim_policy(CHAIN_ID, policy_id(1), "b", later, 300)).claimed_by == "b"

        await store.release_policy(CHAIN_ID, policy_id(1), "a")
        assert (await store.get_policy(CHAIN_ID, policy_id(1))).claimed_by == "b"
        await store.release_policy(CHAIN_ID, policy_id(1), "b")
        assert (await store.get_policy(CHAIN_ID, policy_id(1))).claimed_by is None

    @pytest.mark.asyncio
    async def test_claim_rechecks_active_and_due(self, store):
        """A claim should fail once the row is no longer active or no longer due."""
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME))
        await store.insert_policy(make_policy(policy_id(2), next_charge_at=BASE_TIME))
        early = BASE_TIME - timedelta(minutes=1)

        assert await store.claim_policy(CHAIN_ID, policy_id(1), "a", early, 300) is None
        manual = await store.claim_policy(CHAIN_ID, policy_id(1), "a", early, 300, require_due=False)
        assert manual.id == policy_id(1)
        await store.release_policy(CHAIN_ID, policy_id(1), "a")

        # Another worker charged it in between; the claim sees the new cursor
        await store.update_policy_after_charge(CHAIN_ID, policy_id(1), 10_000_000, BASE_TIME)
        assert await store.claim_policy(CHAIN_ID, policy_id(1), "b", BASE_TIME, 300) is None

        await store.revoke_policy(CHAIN_ID, policy_id(2), BASE_TIME)
        assert await store.claim_policy(CHAIN_ID, policy_id(2), "a", BASE_TIME, 300) is None
        assert await store.claim_policy(CHAIN_ID, policy_id(2), "a", BASE_TIME, 300, require_due=False) is None
        assert await store.claim_policy(CHAIN_ID, policy_id(9), "a", BASE_TIME, 300) is None


class TestChargesAndCheckpoints:
    """Tests for charge records, checkpoints and status."""

    @pytest.mark.asyncio
    async def test_charge_record_lifecycle(self, store):
        charge_id = await store.create_charge_record(CHAIN_ID, policy_id(1), 100)
        record = await store.get_charge_record(charge_id)
        assert record.status == ChargeStatus.PENDING
        assert record.attempt_count == 1

        assert await store.increment_charge_attempt(charge_id) == 2
        await store.mark_charge_failed(charge_id, "reverted", tx_hash="0xabc")

        record = await store.get_charge_record(charge_id)
        assert record.status == ChargeStatus.FAILED
        assert record.attempt_count == 2
        assert record.completed_at is not None
        assert await store.increment_charge_attempt(999) == 0

    @pytest.mark.asyncio
    async def test_initialize_indexer_state_only_once(self, store):
        await store.initialize_indexer_state(CHAIN_ID, 100)
        assert await store.get_last_indexed_block(CHAIN_ID) == 99

        await store.set_last_indexed_block(CHAIN_ID, 500)
        await store.initialize_indexer_state(CHAIN_ID, 100)
        assert await store.get_last_indexed_block(CHAIN_ID) == 500

    @pytest.mark.asyncio
    async def test_status(self, store):
        await store.insert_policy(make_policy(policy_id(1), next_charge_at=BASE_TIME))
        await store.create_charge_record(CHAIN_ID, policy_id(1), 100)
        await store.queue_webhook(policy_id(1), WebhookEventType.POLICY_CREATED, {})
        await store.set_last_indexed_block(CHAIN_ID, 7)

        status = await store.get_status([CHAIN_ID])

        chain_status = status.chains[CHAIN_ID]
        assert chain_status.last_indexed_block == 7
        assert chain_status.active_policies == 1
        assert chain_status.pending_charges == 1
        assert status.webhooks_pending == 1


class TestCreateStore:
    def test_schemes(self):
        assert isinstance(create_store("memory://"), InMemoryRelayerStore)
        assert isinstance(create_store("postgresql://u:p@localhost/autopay"), PostgresRelayerStore)
        with pytest.raises(ValueError):
            create_store("mysql://localhost/autopay")
