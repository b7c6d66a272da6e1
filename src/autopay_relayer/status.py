"""Relayer status snapshot shared by the health endpoint and the ``status`` command."""
from __future__ import annotations

from typing import Any, Dict, List

from . import __version__
from .config import RelayerSettings
from .models import utc_now
from .retry import format_retry_config
from .stores import RelayerStore

# More failed deliveries than this marks the relayer degraded
WEBHOOK_FAILURE_THRESHOLD = 10


async def collect_status(store: RelayerStore, settings: RelayerSettings) -> Dict[str, Any]:
    """
    Build the status document.

    ``status`` is ``"degraded"`` when an enabled chain has never been
    indexed or too many webhooks failed delivery, otherwise ``"ok"``.
    Store errors propagate to the caller.
    """
    chains = settings.enabled_chains()
    snapshot = await store.get_status([c.chain_id for c in chains])

    degraded = snapshot.webhooks_failed > WEBHOOK_FAILURE_THRESHOLD
    chain_rows: List[Dict[str, Any]] = []
    for chain in chains:
        row = snapshot.chains.get(chain.chain_id)
        last_block = row.last_indexed_block if row else None
        if last_block is None:
            degraded = True
        chain_rows.append({
            "chainId": chain.chain_id,
            "name": chain.name,
            "lastIndexedBlock": last_block,
            "activePolicies": row.active_policies if row else 0,
            "pendingCharges": row.pending_charges if row else 0,
            "healthy": last_block is not None,
        })

    return {
        "status": "degraded" if degraded else "ok",
        "version": __version__,
        "timestamp": utc_now().isoformat(),
        "chains": chain_rows,
        "webhooks": {
            "pending": snapshot.webhooks_pending,
            "failed": snapshot.webhooks_failed,
        },
        "retry": format_retry_config(settings.retry),
    }
