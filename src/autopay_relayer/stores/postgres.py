"""PostgreSQL-backed relayer store.

Every mutation is a single statement keyed by (chain_id, policy id),
charge id or chain id. ``transaction()`` pins one pooled connection to
the current task so that the calls made inside it commit together.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Sequence

import asyncpg

from ..exceptions import StoreError
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
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS policies (
    id TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    payer TEXT NOT NULL,
    merchant TEXT NOT NULL,
    charge_amount NUMERIC(78, 0) NOT NULL,
    spending_cap NUMERIC(78, 0) NOT NULL DEFAULT 0,
    total_spent NUMERIC(78, 0) NOT NULL DEFAULT 0,
    interval_seconds INTEGER NOT NULL,
    last_charged_at TIMESTAMPTZ,
    next_charge_at TIMESTAMPTZ NOT NULL,
    charge_count INTEGER NOT NULL DEFAULT 1,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    metadata_url TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    created_block BIGINT NOT NULL DEFAULT 0,
    created_tx TEXT NOT NULL DEFAULT '',
    ended_at TIMESTAMPTZ,
    end_reason TEXT,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_failure_reason TEXT,
    retry_attempts INTEGER NOT NULL DEFAULT 0,
    needs_attention BOOLEAN NOT NULL DEFAULT FALSE,
    cancelled_by_failure BOOLEAN NOT NULL DEFAULT FALSE,
    cancelled_at TIMESTAMPTZ,
    claimed_by TEXT,
    claimed_until TIMESTAMPTZ,
    PRIMARY KEY (chain_id, id)
);

CREATE INDEX IF NOT EXISTS idx_policies_due ON policies(chain_id, next_charge_at) WHERE active;
CREATE INDEX IF NOT EXISTS idx_policies_merchant ON policies(merchant);
CREATE INDEX IF NOT EXISTS idx_policies_attention ON policies(chain_id) WHERE needs_attention;

CREATE TABLE IF NOT EXISTS charges (
    id BIGSERIAL PRIMARY KEY,
    policy_id TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    amount NUMERIC(78, 0) NOT NULL,
    protocol_fee NUMERIC(78, 0),
    tx_hash TEXT,
    error_message TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    completed_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_charges_policy ON charges(chain_id, policy_id);
CREATE INDEX IF NOT EXISTS idx_charges_pending ON charges(chain_id) WHERE status = 'pending';

CREATE TABLE IF NOT EXISTS webhooks (
    id BIGSERIAL PRIMARY KEY,
    policy_id TEXT NOT NULL,
    charge_id BIGINT REFERENCES charges(id),
    event_type TEXT NOT NULL,
    payload JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_webhooks_pending ON webhooks(status, next_attempt_at);

CREATE TABLE IF NOT EXISTS indexer_state (
    chain_id INTEGER PRIMARY KEY,
    last_indexed_block BIGINT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# Ending is one-way, except that a divergence-ended row is relabelled by the chain's own event
_ENDABLE = "(active OR end_reason = 'inactive_on_chain')"


def _num(value: int) -> Decimal:
    return Decimal(value)


def _int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _row_to_policy(row: asyncpg.Record) -> Policy:
    return Policy(
        id=row["id"],
        chain_id=row["chain_id"],
        payer=row["payer"],
        merchant=row["merchant"],
        charge_amount=int(row["charge_amount"]),
        spending_cap=int(row["spending_cap"]),
        total_spent=int(row["total_spent"]),
        interval_seconds=row["interval_seconds"],
        last_charged_at=row["last_charged_at"],
        next_charge_at=row["next_charge_at"],
        charge_count=row["charge_count"],
        active=row["active"],
        metadata_url=row["metadata_url"],
        created_at=row["created_at"],
        created_block=row["created_block"],
        created_tx=row["created_tx"],
        ended_at=row["ended_at"],
        end_reason=EndReason(row["end_reason"]) if row["end_reason"] else None,
        consecutive_failures=row["consecutive_failures"],
        last_failure_reason=row["last_failure_reason"],
        retry_attempts=row["retry_attempts"],
        needs_attention=row["needs_attention"],
        cancelled_by_failure=row["cancelled_by_failure"],
        cancelled_at=row["cancelled_at"],
        claimed_by=row["claimed_by"],
        claimed_until=row["claimed_until"],
    )


def _row_to_charge(row: asyncpg.Record) -> ChargeRecord:
    return ChargeRecord(
        id=row["id"],
        policy_id=row["policy_id"],
        chain_id=row["chain_id"],
        amount=int(row["amount"]),
        status=ChargeStatus(row["status"]),
        protocol_fee=_int(row["protocol_fee"]),
        tx_hash=row["tx_hash"],
        error_message=row["error_message"],
        attempt_count=row["attempt_count"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


def _row_to_outbox(row: asyncpg.Record) -> OutboxEntry:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return OutboxEntry(
        id=row["id"],
        policy_id=row["policy_id"],
        event_type=WebhookEventType(row["event_type"]),
        payload=payload,
        charge_id=row["charge_id"],
        status=WebhookStatus(row["status"]),
        attempts=row["attempts"],
        next_attempt_at=row["next_attempt_at"],
        created_at=row["created_at"],
    )


class PostgresRelayerStore:
    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._tx_conn: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"relayer_tx_conn_{id(self)}", default=None
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            dsn = self._dsn
            # Heroku/Railway style URLs
            if dsn.startswith("postgres://"):
                dsn = dsn.replace("postgres://", "postgresql://", 1)
            self._pool = await asyncpg.create_pool(
                dsn, min_size=self._min_size, max_size=self._max_size, command_timeout=60
            )
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._tx_conn.get() is not None:
            yield
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield
                finally:
                    self._tx_conn.reset(token)

    async def _execute(self, query: str, *args: Any) -> str:
        async with self._connection() as conn:
            return await conn.execute(query, *args)

    async def _fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        async with self._connection() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self._connection() as conn:
            return await conn.fetch(query, *args)

    async def _fetchval(self, query: str, *args: Any) -> Any:
        async with self._connection() as conn:
            return await conn.fetchval(query, *args)

    # -- policies -----------------------------------------------------------

    async def insert_policy(self, policy: Policy) -> bool:
        res = await self._execute(
            """
            INSERT INTO policies (
                id, chain_id, payer, merchant, charge_amount, spending_cap, total_spent,
                interval_seconds, last_charged_at, next_charge_at, charge_count, active,
                metadata_url, created_at, created_block, created_tx
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, TRUE, $12, $13, $14, $15)
            ON CONFLICT (chain_id, id) DO NOTHING
            """,
            policy.id,
            policy.chain_id,
            policy.payer.lower(),
            policy.merchant.lower(),
            _num(policy.charge_amount),
            _num(policy.spending_cap),
            _num(policy.total_spent),
            policy.interval_seconds,
            policy.last_charged_at,
            policy.next_charge_at,
            policy.charge_count,
            policy.metadata_url,
            policy.created_at,
            policy.created_block,
            policy.created_tx,
        )
        return res == "INSERT 0 1"

    async def get_policy(self, chain_id: int, policy_id: str) -> Optional[Policy]:
        row = await self._fetchrow(
            "SELECT * FROM policies WHERE chain_id = $1 AND id = $2",
            chain_id,
            policy_id,
        )
        return _row_to_policy(row) if row else None

    async def revoke_policy(self, chain_id: int, policy_id: str, ended_at: datetime) -> bool:
        res = await self._execute(
            f"""
            UPDATE policies
            SET active = FALSE, ended_at = COALESCE(ended_at, $3), end_reason = 'revoked',
                claimed_by = NULL, claimed_until = NULL
            WHERE chain_id = $1 AND id = $2 AND {_ENDABLE}
            """,
            chain_id,
            policy_id,
            ended_at,
        )
        return res == "UPDATE 1"

    async def mark_policy_cancelled_by_failure(
        self, chain_id: int, policy_id: str, ended_at: datetime
    ) -> bool:
        res = await self._execute(
            f"""
            UPDATE policies
            SET active = FALSE, cancelled_by_failure = TRUE, cancelled_at = $3,
                ended_at = COALESCE(ended_at, $3), end_reason = 'cancelled_by_failure',
                claimed_by = NULL, claimed_until = NULL
            WHERE chain_id = $1 AND id = $2 AND {_ENDABLE}
            """,
            chain_id,
            policy_id,
            ended_at,
        )
        return res == "UPDATE 1"

    async def mark_policy_inactive(self, chain_id: int, policy_id: str, ended_at: datetime) -> bool:
        res = await self._execute(
            """
            UPDATE policies
            SET active = FALSE, ended_at = $3, end_reason = 'inactive_on_chain'
            WHERE chain_id = $1 AND id = $2 AND active
            """,
            chain_id,
            policy_id,
            ended_at,
        )
        return res == "UPDATE 1"

    async def update_policy_after_charge(
        self, chain_id: int, policy_id: str, amount: int, charged_at: datetime
    ) -> bool:
        res = await self._execute(
            """
            UPDATE policies
            SET last_charged_at = $4,
                next_charge_at = $4 + interval_seconds * INTERVAL '1 second',
                charge_count = charge_count + 1,
                total_spent = total_spent + $3
            WHERE chain_id = $1 AND id = $2
            """,
            chain_id,
            policy_id,
            _num(amount),
            charged_at,
        )
        return res == "UPDATE 1"

    async def mark_policy_needs_attention(self, chain_id: int, policy_id: str, reason: str) -> None:
        await self._execute(
            """
            UPDATE policies SET needs_attention = TRUE, last_failure_reason = $3
            WHERE chain_id = $1 AND id = $2
            """,
            chain_id,
            policy_id,
            reason,
        )

    async def increment_consecutive_failures(
        self, chain_id: int, policy_id: str, reason: str, now: datetime
    ) -> int:
        count = await self._fetchval(
            """
            UPDATE policies
            SET consecutive_failures = consecutive_failures + 1,
                last_failure_reason = $3,
                next_charge_at = GREATEST(next_charge_at, $4) + interval_seconds * INTERVAL '1 second'
            WHERE chain_id = $1 AND id = $2
            RETURNING consecutive_failures
            """,
            chain_id,
            policy_id,
            reason,
            now,
        )
        return count or 0

    async def reset_consecutive_failures(self, chain_id: int, policy_id: str) -> None:
        await self._execute(
            """
            UPDATE policies
            SET consecutive_failures = 0, retry_attempts = 0,
                needs_attention = FALSE, last_failure_reason = NULL
            WHERE chain_id = $1 AND id = $2
            """,
            chain_id,
            policy_id,
        )

    async def increment_retry_attempts(self, chain_id: int, policy_id: str, reason: str) -> int:
        count = await self._fetchval(
            """
            UPDATE policies
            SET retry_attempts = retry_attempts + 1, last_failure_reason = $3
            WHERE chain_id = $1 AND id = $2
            RETURNING retry_attempts
            """,
            chain_id,
            policy_id,
            reason,
        )
        return count or 0

    async def push_next_charge_at(self, chain_id: int, policy_id: str, now: datetime) -> None:
        await self._execute(
            """
            UPDATE policies
            SET next_charge_at = GREATEST(next_charge_at, $3) + interval_seconds * INTERVAL '1 second'
            WHERE chain_id = $1 AND id = $2
            """,
            chain_id,
            policy_id,
            now,
        )

    async def get_policies_due_for_charge(
        self,
        chain_id: int,
        now: datetime,
        limit: int,
        max_consecutive_failures: int,
        merchant_allowlist: Optional[FrozenSet[str]] = None,
    ) -> List[Policy]:
        merchants = sorted(merchant_allowlist) if merchant_allowlist is not None else None
        rows = await self._fetch(
            """
            SELECT * FROM policies
            WHERE chain_id = $1
              AND active
              AND consecutive_failures < $2
              AND next_charge_at <= $3
              AND (claimed_until IS NULL OR claimed_until <= $3)
              AND ($5::text[] IS NULL OR merchant = ANY($5::text[]))
            ORDER BY next_charge_at ASC
            LIMIT $4
            """,
            chain_id,
            max_consecutive_failures,
            now,
            limit,
            merchants,
        )
        return [_row_to_policy(r) for r in rows]

    async def claim_policy(
        self,
        chain_id: int,
        policy_id: str,
        owner: str,
        now: datetime,
        lease_seconds: int,
        require_due: bool = True,
    ) -> Optional[Policy]:
        row = await self._fetchrow(
            """
            UPDATE policies SET claimed_by = $3, claimed_until = $5
            WHERE chain_id = $1 AND id = $2
              AND active
              AND (NOT $6::boolean OR next_charge_at <= $4)
              AND (claimed_until IS NULL OR claimed_until <= $4 OR claimed_by = $3)
            RETURNING *
            """,
            chain_id,
            policy_id,
            owner,
            now,
            now + timedelta(seconds=lease_seconds),
            require_due,
        )
        return _row_to_policy(row) if row else None

    async def release_policy(self, chain_id: int, policy_id: str, owner: str) -> None:
        await self._execute(
            """
            UPDATE policies SET claimed_by = NULL, claimed_until = NULL
            WHERE chain_id = $1 AND id = $2 AND claimed_by = $3
            """,
            chain_id,
            policy_id,
            owner,
        )

    # -- charge records -----------------------------------------------------

    async def create_charge_record(
        self, chain_id: int, policy_id: str, amount: int, attempt_count: int = 1
    ) -> int:
        return await self._fetchval(
            """
            INSERT INTO charges (policy_id, chain_id, status, amount, attempt_count)
            VALUES ($1, $2, 'pending', $3, $4)
            RETURNING id
            """,
            policy_id,
            chain_id,
            _num(amount),
            attempt_count,
        )

    async def mark_charge_success(
        self, charge_id: int, tx_hash: str, amount: int, protocol_fee: int
    ) -> None:
        await self._execute(
            """
            UPDATE charges
            SET status = 'success', tx_hash = $2, amount = $3, protocol_fee = $4, completed_at = NOW()
            WHERE id = $1
            """,
            charge_id,
            tx_hash,
            _num(amount),
            _num(protocol_fee),
        )

    async def mark_charge_failed(
        self,
        charge_id: int,
        error_message: str,
        tx_hash: Optional[str] = None,
        attempt_count: Optional[int] = None,
    ) -> None:
        await self._execute(
            """
            UPDATE charges
            SET status = 'failed', error_message = $2, tx_hash = COALESCE($3, tx_hash),
                attempt_count = COALESCE($4, attempt_count), completed_at = NOW()
            WHERE id = $1
            """,
            charge_id,
            error_message,
            tx_hash,
            attempt_count,
        )

    async def increment_charge_attempt(self, charge_id: int) -> int:
        count = await self._fetchval(
            "UPDATE charges SET attempt_count = attempt_count + 1 WHERE id = $1 RETURNING attempt_count",
            charge_id,
        )
        return count or 0

    async def get_charge_record(self, charge_id: int) -> Optional[ChargeRecord]:
        row = await self._fetchrow("SELECT * FROM charges WHERE id = $1", charge_id)
        return _row_to_charge(row) if row else None

    async def list_charge_records(self, chain_id: int, policy_id: str) -> List[ChargeRecord]:
        rows = await self._fetch(
            "SELECT * FROM charges WHERE chain_id = $1 AND policy_id = $2 ORDER BY id",
            chain_id,
            policy_id,
        )
        return [_row_to_charge(r) for r in rows]

    # -- webhook outbox -----------------------------------------------------

    async def queue_webhook(
        self,
        policy_id: str,
        event_type: WebhookEventType,
        payload: Dict[str, Any],
        charge_id: Optional[int] = None,
    ) -> int:
        return await self._fetchval(
            """
            INSERT INTO webhooks (policy_id, charge_id, event_type, payload, status)
            VALUES ($1, $2, $3, $4::jsonb, 'pending')
            RETURNING id
            """,
            policy_id,
            charge_id,
            event_type.value,
            json.dumps(payload, default=str),
        )

    async def list_webhooks(self, status: Optional[WebhookStatus] = None) -> List[OutboxEntry]:
        if status is None:
            rows = await self._fetch("SELECT * FROM webhooks ORDER BY id")
        else:
            rows = await self._fetch(
                "SELECT * FROM webhooks WHERE status = $1 ORDER BY id", status.value
            )
        return [_row_to_outbox(r) for r in rows]

    # -- checkpoints --------------------------------------------------------

    async def get_last_indexed_block(self, chain_id: int) -> Optional[int]:
        return await self._fetchval(
            "SELECT last_indexed_block FROM indexer_state WHERE chain_id = $1", chain_id
        )

    async def set_last_indexed_block(self, chain_id: int, block_number: int) -> None:
        await self._execute(
            """
            INSERT INTO indexer_state (chain_id, last_indexed_block, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (chain_id) DO UPDATE
            SET last_indexed_block = EXCLUDED.last_indexed_block, updated_at = NOW()
            """,
            chain_id,
            block_number,
        )

    async def initialize_indexer_state(self, chain_id: int, start_block: int) -> None:
        await self._execute(
            """
            INSERT INTO indexer_state (chain_id, last_indexed_block)
            VALUES ($1, $2)
            ON CONFLICT (chain_id) DO NOTHING
            """,
            chain_id,
            start_block - 1,
        )

    # -- misc ---------------------------------------------------------------

    async def get_status(self, chain_ids: Sequence[int]) -> StoreStatus:
        ids = list(chain_ids)
        checkpoints = await self._fetch(
            "SELECT chain_id, last_indexed_block FROM indexer_state WHERE chain_id = ANY($1::int[])", ids
        )
        active = await self._fetch(
            """
            SELECT chain_id, COUNT(*) AS n FROM policies
            WHERE active AND chain_id = ANY($1::int[]) GROUP BY chain_id
            """,
            ids,
        )
        pending = await self._fetch(
            """
            SELECT chain_id, COUNT(*) AS n FROM charges
            WHERE status = 'pending' AND chain_id = ANY($1::int[]) GROUP BY chain_id
            """,
            ids,
        )
        webhooks = await self._fetch(
            "SELECT status, COUNT(*) AS n FROM webhooks WHERE status IN ('pending', 'failed') GROUP BY status"
        )

        status = StoreStatus(chains={cid: ChainStatus(chain_id=cid) for cid in ids})
        for row in checkpoints:
            status.chains[row["chain_id"]].last_indexed_block = row["last_indexed_block"]
        for row in active:
            status.chains[row["chain_id"]].active_policies = row["n"]
        for row in pending:
            status.chains[row["chain_id"]].pending_charges = row["n"]
        for row in webhooks:
            if row["status"] == WebhookStatus.PENDING.value:
                status.webhooks_pending = row["n"]
            else:
                status.webhooks_failed = row["n"]
        return status

    async def migrate(self) -> None:
        """Create tables and indexes if they do not exist."""
        try:
            async with self._connection() as conn:
                await conn.execute(SCHEMA_SQL)
        except asyncpg.PostgresError as e:
            raise StoreError(f"Migration failed: {e}", operation="migrate") from e
        logger.info("Database schema is up to date")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
