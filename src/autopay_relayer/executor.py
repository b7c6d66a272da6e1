"""
Charge executor.

Selects due policies on every enabled chain, attempts the on-chain charge
and drives the policy state machine from the outcome:

- success: cursor moves to ``now + interval``, failure counters reset
- soft-fail: consecutive failure counter grows; the failure that reaches
  the bound also ends the policy in the store, then the policy is
  cancelled on-chain (best effort)
- hard-fail: retry counter grows; once retries are exhausted the policy is
  flagged for operator attention but stays active

Every attempt opens a pending charge record first and resolves it in the
same transaction as the policy update and its webhook.
"""
from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Mapping, Optional

from .chain.charger import ChargeOperation, ChargeOutcome, ChargeOutcomeKind
from .config import ChainSettings, RelayerSettings
from .exceptions import PolicyNotFoundError, ValidationError
from .logging_config import bind_chain, bind_policy
from .models import Policy, WebhookEventType, utc_now
from .retry import RetryConfig, decide, is_policy_inactive_error
from .stores import RelayerStore
from .utils import wait_for_stop
from .webhooks import payload_for_policy

logger = logging.getLogger(__name__)


def default_owner() -> str:
    """Lease owner id for this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class ExecutorRunResult:
    """Counts for one pass over a chain."""
    chain_id: int
    selected: int = 0
    succeeded: int = 0
    soft_failed: int = 0
    hard_failed: int = 0
    skipped: int = 0


class ChargeExecutor:
    """
    Bills due policies and applies the failure/retry/cancellation rules.

    Args:
        store: Relayer store
        chargers: Charge operation per chain id
        settings: Relayer settings
        retry_config: Overrides ``settings.retry``
        owner: Lease owner id; defaults to host, pid and a random suffix
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: RelayerStore,
        chargers: Mapping[int, ChargeOperation],
        settings: RelayerSettings,
        retry_config: Optional[RetryConfig] = None,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._chargers = chargers
        self._settings = settings
        self._retry = retry_config or settings.retry
        self._owner = owner or default_owner()
        self._clock = clock

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry

    async def run_once(self) -> List[ExecutorRunResult]:
        """One pass over every enabled chain. A failing chain does not stop the others."""
        results: List[ExecutorRunResult] = []
        for chain in self._settings.enabled_chains():
            if chain.chain_id not in self._chargers:
                logger.warning(f"No charger configured for {chain.name}, skipping")
                continue
            try:
                results.append(await self.process_chain(chain))
            except Exception as e:
                logger.error(
                    f"Executor run failed for {chain.name}: {e}",
                    exc_info=True,
                    extra={"chain_id": chain.chain_id},
                )
        return results

    async def process_chain(self, chain: ChainSettings) -> ExecutorRunResult:
        """Charge up to ``executor.batch_size`` due policies on one chain, oldest due first."""
        with bind_chain(chain.chain_id):
            result = ExecutorRunResult(chain_id=chain.chain_id)
            due = await self._store.get_policies_due_for_charge(
                chain.chain_id,
                self._clock(),
                self._settings.executor.batch_size,
                self._retry.max_consecutive_failures,
                self._settings.merchant_allowlist,
            )
            result.selected = len(due)
            if not due:
                logger.debug(f"No policies due on {chain.name}")
                return result

            logger.info(f"Found {len(due)} policies due on {chain.name}")

            for policy in due:
                outcome = await self.charge_policy(chain, policy)
                if outcome is None:
                    result.skipped += 1
                elif outcome.kind == ChargeOutcomeKind.SUCCESS:
                    result.succeeded += 1
                elif outcome.kind == ChargeOutcomeKind.SOFT_FAIL:
                    result.soft_failed += 1
                else:
                    result.hard_failed += 1

            return result

    async def charge_by_id(self, policy_id: str, chain_id: Optional[int] = None) -> ChargeOutcome:
        """
        Charge a single policy immediately, ignoring its billing cursor.

        Raises:
            PolicyNotFoundError: Policy is not in the store
            ValidationError: Policy is no longer active, or was leased by another worker
        """
        chains = self._settings.enabled_chains()
        if chain_id is not None:
            chains = [c for c in chains if c.chain_id == chain_id]

        for chain in chains:
            policy = await self._store.get_policy(chain.chain_id, policy_id)
            if policy is None:
                continue
            if not policy.active:
                raise ValidationError(f"Policy {policy_id} is not active", field="policy_id")
            with bind_chain(chain.chain_id):
                outcome = await self.charge_policy(chain, policy, require_due=False)
            if outcome is None:
                raise ValidationError(
                    f"Policy {policy_id} is being charged by another worker or has ended", field="policy_id"
                )
            return outcome

        raise PolicyNotFoundError(chain_id or 0, policy_id)

    async def charge_policy(
        self, chain: ChainSettings, policy: Policy, require_due: bool = True
    ) -> Optional[ChargeOutcome]:
        """
        Lease, attempt and settle one policy.

        The attempt uses the row returned by the claim, not ``policy``, so a
        policy charged or ended by another worker since selection is skipped.
        Returns None if the lease was not acquired.
        """
        with bind_policy(policy.id):
            claimed = await self._store.claim_policy(
                chain.chain_id,
                policy.id,
                self._owner,
                self._clock(),
                self._settings.executor.lease_seconds,
                require_due=require_due,
            )
            if claimed is None:
                logger.info(f"Policy {policy.id} is leased, inactive or no longer due, skipping")
                return None

            try:
                return await self._attempt(chain, claimed)
            finally:
                await self._store.release_policy(chain.chain_id, policy.id, self._owner)

    async def _attempt(self, chain: ChainSettings, policy: Policy) -> ChargeOutcome:
        charger = self._chargers[chain.chain_id]
        charge_id = await self._store.create_charge_record(chain.chain_id, policy.id, policy.charge_amount)

        logger.info(
            f"Charging policy {policy.id}",
            extra={"charge_id": charge_id, "amount": policy.charge_amount, "merchant": policy.merchant},
        )

        try:
            outcome = await charger.charge(policy.id)
        except asyncio.CancelledError:
            await self._abandon(policy, charge_id, "interrupted by shutdown before confirmation")
            raise
        except Exception as e:
            logger.error(f"Charge operation raised for {policy.id}: {e}", exc_info=True)
            outcome = ChargeOutcome.hard_fail(str(e) or type(e).__name__)

        now = self._clock()
        try:
            if outcome.kind == ChargeOutcomeKind.SUCCESS:
                await self._on_success(policy, charge_id, outcome, now)
            elif outcome.kind == ChargeOutcomeKind.SOFT_FAIL:
                await self._on_soft_fail(charger, policy, charge_id, outcome, now)
            else:
                await self._on_hard_fail(policy, charge_id, outcome, now)
        except Exception as e:
            logger.error(f"Recording the outcome of charge {charge_id} failed: {e}", exc_info=True)
            await self._abandon(policy, charge_id, f"outcome not recorded: {outcome.kind.value}")
            raise
        return outcome

    async def _on_success(
        self, policy: Policy, charge_id: int, outcome: ChargeOutcome, now: datetime
    ) -> None:
        amount = outcome.amount or policy.charge_amount
        protocol_fee = outcome.protocol_fee or 0

        async with self._store.transaction():
            await self._store.mark_charge_success(charge_id, outcome.tx_hash or "", amount, protocol_fee)
            await self._store.update_policy_after_charge(policy.chain_id, policy.id, amount, now)
            await self._store.reset_consecutive_failures(policy.chain_id, policy.id)
            await self._store.queue_webhook(
                policy.id,
                WebhookEventType.CHARGE_SUCCEEDED,
                payload_for_policy(
                    WebhookEventType.CHARGE_SUCCEEDED,
                    policy,
                    amount=amount,
                    protocol_fee=protocol_fee,
                    tx_hash=outcome.tx_hash,
                ),
                charge_id=charge_id,
            )

        logger.info(
            f"Charge succeeded for {policy.id}: {outcome.tx_hash}",
            extra={"charge_id": charge_id, "amount": amount, "protocol_fee": protocol_fee},
        )

    async def _on_soft_fail(
        self,
        charger: ChargeOperation,
        policy: Policy,
        charge_id: int,
        outcome: ChargeOutcome,
        now: datetime,
    ) -> None:
        reason = outcome.reason or "charge failed"

        # The failure that reaches the bound ends the policy in the same commit
        async with self._store.transaction():
            await self._store.mark_charge_failed(charge_id, reason, tx_hash=outcome.tx_hash)
            failures = await self._store.increment_consecutive_failures(
                policy.chain_id, policy.id, reason, now
            )
            await self._store.queue_webhook(
                policy.id,
                WebhookEventType.CHARGE_FAILED,
                payload_for_policy(
                    WebhookEventType.CHARGE_FAILED,
                    policy,
                    amount=policy.charge_amount,
                    reason=reason,
                    tx_hash=outcome.tx_hash,
                    consecutive_failures=failures,
                ),
                charge_id=charge_id,
            )

            cancelling = failures >= self._retry.max_consecutive_failures
            ended = cancelling and await self._store.mark_policy_cancelled_by_failure(
                policy.chain_id, policy.id, now
            )
            if ended:
                await self._store.queue_webhook(
                    policy.id,
                    WebhookEventType.POLICY_CANCELLED_BY_FAILURE,
                    payload_for_policy(
                        WebhookEventType.POLICY_CANCELLED_BY_FAILURE,
                        policy,
                        consecutive_failures=failures,
                        reason=reason,
                        end_time=int(now.timestamp()),
                    ),
                )

        logger.warning(
            f"Charge soft-failed for {policy.id}: {reason}",
            extra={"charge_id": charge_id, "consecutive_failures": failures},
        )

        if not cancelling:
            return

        logger.warning(f"Policy {policy.id} reached {failures} consecutive failures, cancelled in store")
        try:
            cancel = await charger.cancel_failed_policy(policy.id)
        except Exception as e:
            logger.error(f"On-chain cancellation raised for {policy.id}: {e}", exc_info=True)
            return

        if cancel.success:
            logger.info(f"Cancelled {policy.id} on-chain: {cancel.tx_hash}")
        else:
            logger.warning(f"On-chain cancellation failed for {policy.id}: {cancel.error}")

    async def _abandon(self, policy: Policy, charge_id: int, reason: str) -> None:
        """Fail an attempt whose outcome could not be applied; the indexer reconciles a landed tx."""
        async with self._store.transaction():
            await self._store.mark_charge_failed(charge_id, reason)
            await self._store.push_next_charge_at(policy.chain_id, policy.id, self._clock())
        logger.warning(f"Charge {charge_id} for {policy.id} abandoned: {reason}", extra={"charge_id": charge_id})

    async def _on_hard_fail(
        self, policy: Policy, charge_id: int, outcome: ChargeOutcome, now: datetime
    ) -> None:
        reason = outcome.reason or "unknown error"

        if is_policy_inactive_error(reason):
            # Chain already ended the policy; the indexer will report why
            async with self._store.transaction():
                await self._store.mark_charge_failed(charge_id, reason, tx_hash=outcome.tx_hash)
                await self._store.mark_policy_inactive(policy.chain_id, policy.id, now)
                await self._store.push_next_charge_at(policy.chain_id, policy.id, now)
            logger.warning(f"Policy {policy.id} is not active on-chain, marked inactive: {reason}")
            return

        async with self._store.transaction():
            attempt = await self._store.increment_retry_attempts(policy.chain_id, policy.id, reason)
            decision = decide(attempt, reason, self._retry)

            await self._store.mark_charge_failed(
                charge_id, reason, tx_hash=outcome.tx_hash, attempt_count=attempt
            )
            await self._store.push_next_charge_at(policy.chain_id, policy.id, now)

            if decision.exhausted:
                await self._store.mark_policy_needs_attention(policy.chain_id, policy.id, reason)

            if not decision.should_retry:
                await self._store.queue_webhook(
                    policy.id,
                    WebhookEventType.CHARGE_FAILED,
                    payload_for_policy(
                        WebhookEventType.CHARGE_FAILED,
                        policy,
                        amount=policy.charge_amount,
                        reason=reason,
                        tx_hash=outcome.tx_hash,
                        attempt=attempt,
                        retryable=decision.retryable,
                    ),
                    charge_id=charge_id,
                )

        if decision.should_retry:
            logger.warning(
                f"Charge hard-failed for {policy.id} (attempt {attempt}/{self._retry.max_retries}), "
                f"will retry next cycle: {reason}",
                extra={"charge_id": charge_id, "retry_delay_ms": decision.delay_ms},
            )
        elif decision.exhausted:
            logger.error(
                f"Retries exhausted for {policy.id} after {attempt} attempts, needs attention: {reason}",
                extra={"charge_id": charge_id},
            )
        else:
            logger.error(
                f"Charge hard-failed for {policy.id} with a terminal error: {reason}",
                extra={"charge_id": charge_id},
            )

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Run passes until ``stop_event`` is set; stops only between passes."""
        interval = self._settings.executor.run_interval_seconds
        logger.info(f"Executor started (every {interval:.0f}s, owner {self._owner})")

        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Executor run failed: {e}", exc_info=True)

            if await wait_for_stop(stop_event, interval):
                break

        logger.info("Executor stopped")
