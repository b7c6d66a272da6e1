"""
Chain indexer.

Replays policy manager events into the store, one loop per chain. Only
blocks at least ``confirmations`` deep are read, the checkpoint is saved
after every batch, and each event's store change commits together with
the webhook that announces it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .chain.events import (
    ChainEvent,
    ChargeFailedEvent,
    ChargeSucceededEvent,
    PolicyCancelledByFailureEvent,
    PolicyCreatedEvent,
    PolicyRevokedEvent,
    event_topics,
    parse_log,
    to_int,
)
from .config import ChainSettings, RelayerSettings
from .logging_config import bind_chain
from .models import Policy, WebhookEventType
from .stores import RelayerStore
from .utils import from_unix, wait_for_stop
from .webhooks import build_payload, payload_for_policy

logger = logging.getLogger(__name__)

# Creation includes the first charge. A ChargeSucceeded this close to creation
# on a policy with one charge is that same charge; a real second charge inside
# the window is dropped.
FIRST_CHARGE_WINDOW = timedelta(seconds=60)


class ChainClient(Protocol):
    """Read-only chain access the indexer depends on."""

    async def get_logs(
        self, address: str, topics: Sequence[str], from_block: int, to_block: int
    ) -> List[Dict[str, Any]]: ...
    async def get_block_timestamp(self, block_number: int) -> datetime: ...
    async def get_latest_block(self) -> int: ...


@dataclass
class IndexRunResult:
    """What one indexer run covered."""
    chain_id: int
    from_block: int
    to_block: Optional[int] = None
    batches: int = 0
    logs_seen: int = 0
    events_applied: int = 0

    @property
    def caught_up(self) -> bool:
        return self.to_block is None


def is_new_charge(policy: Policy, charged_at: datetime) -> bool:
    """Decide whether a ChargeSucceeded at ``charged_at`` is not yet reflected in ``policy``.

    Ended policies are included: a charge mined before the revoke still moved funds.
    """
    if policy.charge_count == 1 and abs(charged_at - policy.created_at) < FIRST_CHARGE_WINDOW:
        return False

    if policy.last_charged_at is None or policy.charge_count == 1:
        return True

    # Charges the executor already applied land before the next due time
    expected = policy.last_charged_at + timedelta(seconds=policy.interval_seconds)
    return charged_at >= expected


class Indexer:
    """Keeps the store in sync with on-chain policy state."""

    def __init__(
        self,
        store: RelayerStore,
        clients: Mapping[int, ChainClient],
        settings: RelayerSettings,
    ):
        self._store = store
        self._clients = clients
        self._settings = settings

    def _client(self, chain: ChainSettings) -> ChainClient:
        client = self._clients.get(chain.chain_id)
        if client is None:
            raise ValueError(f"No chain client configured for chain {chain.chain_id}")
        return client

    async def run_once(self, chain: ChainSettings, from_block: Optional[int] = None) -> IndexRunResult:
        """
        Index everything between the checkpoint (or ``from_block``) and the safe head.

        Args:
            chain: Chain to index
            from_block: Explicit start block; defaults to checkpoint + 1

        Returns:
            Summary of the run. Errors propagate and leave the checkpoint
            at the last completed batch.
        """
        with bind_chain(chain.chain_id):
            client = self._client(chain)

            if from_block is None:
                checkpoint = await self._store.get_last_indexed_block(chain.chain_id)
                if checkpoint is None:
                    await self._store.initialize_indexer_state(chain.chain_id, chain.start_block)
                    from_block = chain.start_block
                else:
                    from_block = checkpoint + 1

            result = IndexRunResult(chain_id=chain.chain_id, from_block=from_block)

            latest = await client.get_latest_block()
            safe_block = latest - self._settings.confirmations_for(chain)

            if from_block > safe_block:
                logger.debug(f"{chain.name} caught up at block {from_block - 1} (safe head {safe_block})")
                return result

            batch_size = self._settings.batch_size_for(chain)
            logger.info(
                f"Indexing {chain.name} blocks {from_block}-{safe_block}",
                extra={"from_block": from_block, "safe_block": safe_block, "latest_block": latest},
            )

            current = from_block
            while current <= safe_block:
                to_block = min(current + batch_size - 1, safe_block)

                seen, applied = await self._process_batch(chain, client, current, to_block)
                await self._store.set_last_indexed_block(chain.chain_id, to_block)

                result.to_block = to_block
                result.batches += 1
                result.logs_seen += seen
                result.events_applied += applied

                current = to_block + 1
                if current <= safe_block and self._settings.indexer.batch_delay_seconds > 0:
                    await asyncio.sleep(self._settings.indexer.batch_delay_seconds)

            logger.info(
                f"Indexed {chain.name} up to block {result.to_block}",
                extra={"logs_seen": result.logs_seen, "events_applied": result.events_applied},
            )
            return result

    async def backfill(self, chain: ChainSettings, from_block: int) -> IndexRunResult:
        """Rewind the checkpoint to ``from_block - 1`` and index forward from there."""
        logger.info(f"Backfilling {chain.name} from block {from_block}")
        await self._store.set_last_indexed_block(chain.chain_id, from_block - 1)
        return await self.run_once(chain, from_block=from_block)

    async def run_forever(self, chain: ChainSettings, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set; stops only between runs."""
        interval = self._settings.poll_interval_for(chain)
        logger.info(f"Indexer started for {chain.name} (poll every {interval:.0f}s)")

        while not stop_event.is_set():
            try:
                await self.run_once(chain)
            except Exception as e:
                logger.error(
                    f"Indexer run failed for {chain.name}: {e}",
                    exc_info=True,
                    extra={"chain_name": chain.name},
                )

            if await wait_for_stop(stop_event, interval):
                break

        logger.info(f"Indexer stopped for {chain.name}")

    async def _process_batch(
        self,
        chain: ChainSettings,
        client: ChainClient,
        from_block: int,
        to_block: int,
    ) -> tuple[int, int]:
        logs = await client.get_logs(chain.policy_manager_address, event_topics(), from_block, to_block)
        logs = sorted(logs, key=lambda log: (to_int(log.get("blockNumber")), to_int(log.get("logIndex"))))

        applied = 0
        for log in logs:
            if log.get("removed"):
                continue
            # Some nodes return logs past the requested range near the head
            if to_int(log.get("blockNumber")) > to_block:
                continue

            event = parse_log(log)
            if event is None:
                continue

            merchant = getattr(event, "merchant", None)
            if merchant is not None and not self._settings.is_merchant_allowed(merchant):
                continue

            if await self._apply(chain, client, event):
                applied += 1

        return len(logs), applied

    async def _apply(self, chain: ChainSettings, client: ChainClient, event: ChainEvent) -> bool:
        if isinstance(event, PolicyCreatedEvent):
            return await self._on_policy_created(chain, client, event)
        if isinstance(event, PolicyRevokedEvent):
            return await self._on_policy_revoked(chain, client, event)
        if isinstance(event, ChargeSucceededEvent):
            return await self._on_charge_succeeded(chain, client, event)
        if isinstance(event, PolicyCancelledByFailureEvent):
            return await self._on_policy_cancelled(chain, client, event)
        if isinstance(event, ChargeFailedEvent):
            logger.warning(
                f"On-chain charge failed for {event.policy_id}: {event.reason}",
                extra={"tx_hash": event.tx_hash, "block_number": event.block_number},
            )
        return False

    async def _on_policy_created(
        self, chain: ChainSettings, client: ChainClient, event: PolicyCreatedEvent
    ) -> bool:
        created_at = await client.get_block_timestamp(event.block_number)
        policy = Policy(
            id=event.policy_id,
            chain_id=chain.chain_id,
            payer=event.payer,
            merchant=event.merchant,
            charge_amount=event.charge_amount,
            spending_cap=event.spending_cap,
            interval_seconds=event.interval,
            total_spent=event.charge_amount,
            last_charged_at=created_at,
            next_charge_at=created_at + timedelta(seconds=event.interval),
            charge_count=1,
            metadata_url=event.metadata_url or None,
            created_at=created_at,
            created_block=event.block_number,
            created_tx=event.tx_hash,
        )

        async with self._store.transaction():
            inserted = await self._store.insert_policy(policy)
            if inserted:
                await self._store.queue_webhook(
                    policy.id,
                    WebhookEventType.POLICY_CREATED,
                    payload_for_policy(
                        WebhookEventType.POLICY_CREATED,
                        policy,
                        charge_amount=policy.charge_amount,
                        interval=policy.interval_seconds,
                        spending_cap=policy.spending_cap,
                        metadata_url=policy.metadata_url,
                    ),
                )

        if inserted:
            logger.info(
                f"Policy created: {policy.id}",
                extra={"merchant": policy.merchant, "charge_amount": policy.charge_amount},
            )
        return inserted

    async def _ended_at(self, client: ChainClient, block_number: int, end_time: int) -> datetime:
        if end_time:
            return from_unix(end_time)
        return await client.get_block_timestamp(block_number)

    async def _on_policy_revoked(
        self, chain: ChainSettings, client: ChainClient, event: PolicyRevokedEvent
    ) -> bool:
        ended_at = await self._ended_at(client, event.block_number, event.end_time)

        async with self._store.transaction():
            changed = await self._store.revoke_policy(chain.chain_id, event.policy_id, ended_at)
            if changed:
                await self._store.queue_webhook(
                    event.policy_id,
                    WebhookEventType.POLICY_REVOKED,
                    build_payload(
                        WebhookEventType.POLICY_REVOKED,
                        chain_id=chain.chain_id,
                        policy_id=event.policy_id,
                        payer=event.payer,
                        merchant=event.merchant,
                        end_time=event.end_time,
                    ),
                )

        if changed:
            logger.info(f"Policy revoked: {event.policy_id}")
        return changed

    async def _on_charge_succeeded(
        self, chain: ChainSettings, client: ChainClient, event: ChargeSucceededEvent
    ) -> bool:
        policy = await self._store.get_policy(chain.chain_id, event.policy_id)
        if policy is None:
            logger.debug(f"ChargeSucceeded for unknown policy {event.policy_id}")
            return False

        charged_at = await client.get_block_timestamp(event.block_number)
        if not is_new_charge(policy, charged_at):
            logger.debug(f"ChargeSucceeded for {event.policy_id} already reflected")
            return False

        async with self._store.transaction():
            updated = await self._store.update_policy_after_charge(
                chain.chain_id, event.policy_id, event.amount, charged_at
            )
            if updated:
                await self._store.reset_consecutive_failures(chain.chain_id, event.policy_id)
                await self._store.queue_webhook(
                    event.policy_id,
                    WebhookEventType.CHARGE_SUCCEEDED,
                    payload_for_policy(
                        WebhookEventType.CHARGE_SUCCEEDED,
                        policy,
                        amount=event.amount,
                        protocol_fee=event.protocol_fee,
                        tx_hash=event.tx_hash,
                    ),
                )

        if updated:
            logger.info(
                f"Charge applied from chain for {event.policy_id}",
                extra={"amount": event.amount, "tx_hash": event.tx_hash},
            )
        return updated

    async def _on_policy_cancelled(
        self, chain: ChainSettings, client: ChainClient, event: PolicyCancelledByFailureEvent
    ) -> bool:
        ended_at = await self._ended_at(client, event.block_number, event.end_time)

        async with self._store.transaction():
            changed = await self._store.mark_policy_cancelled_by_failure(
                chain.chain_id, event.policy_id, ended_at
            )
            if changed:
                await self._store.queue_webhook(
                    event.policy_id,
                    WebhookEventType.POLICY_CANCELLED_BY_FAILURE,
                    build_payload(
                        WebhookEventType.POLICY_CANCELLED_BY_FAILURE,
                        chain_id=chain.chain_id,
                        policy_id=event.policy_id,
                        payer=event.payer,
                        merchant=event.merchant,
                        consecutive_failures=event.consecutive_failures,
                        end_time=event.end_time,
                    ),
                )

        if changed:
            logger.info(f"Policy cancelled by failure on-chain: {event.policy_id}")
        return changed
