"""
Long-running relayer process.

One indexer loop per enabled chain, one executor loop across all chains
and the health server, all coordinated only through the store. SIGINT or
SIGTERM sets a shared stop event; loops exit between runs and the process
waits up to ``shutdown_timeout_seconds`` before cancelling stragglers.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Dict, Iterator, List, Optional

import uvicorn

from .api import ShutdownState, create_app
from .chain.charger import ChargeOperation, PolicyManagerClient
from .chain.rpc_client import ChainRPCClient
from .config import RelayerSettings
from .executor import ChargeExecutor
from .indexer import Indexer
from .retry import format_retry_config
from .stores import RelayerStore, create_store

logger = logging.getLogger(__name__)


async def connect_chain_clients(settings: RelayerSettings) -> Dict[int, ChainRPCClient]:
    """Open and chain-id-check an RPC client for every enabled chain."""
    clients: Dict[int, ChainRPCClient] = {}
    try:
        for chain in settings.enabled_chains():
            client = ChainRPCClient(chain)
            clients[chain.chain_id] = client
            await client.connect()
    except BaseException:
        await close_chain_clients(clients)
        raise
    return clients


async def close_chain_clients(clients: Dict[int, ChainRPCClient]) -> None:
    for client in clients.values():
        await client.close()


def build_chargers(
    settings: RelayerSettings, clients: Dict[int, ChainRPCClient]
) -> Dict[int, ChargeOperation]:
    chargers: Dict[int, ChargeOperation] = {}
    for chain in settings.enabled_chains():
        client = clients.get(chain.chain_id)
        if client is None:
            continue
        chargers[chain.chain_id] = PolicyManagerClient(
            client,
            chain,
            settings.relayer_private_key,
            confirmation_timeout_seconds=settings.executor.confirmation_timeout_seconds,
        )
    return chargers


class _ApiServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the relayer."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class RelayerService:
    """
    Owns the store, chain clients and background tasks of one relayer process.

    Args:
        settings: Relayer settings
        store: Store to use instead of one built from ``database_url``
        serve_api: Start the health server on ``settings.port``
    """

    def __init__(
        self,
        settings: RelayerSettings,
        store: Optional[RelayerStore] = None,
        serve_api: bool = True,
    ):
        self._settings = settings
        self._store = store
        self._serve_api = serve_api
        self._clients: Dict[int, ChainRPCClient] = {}
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._shutdown_state = ShutdownState()
        self._server: Optional[_ApiServer] = None

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    async def start(self) -> None:
        settings = self._settings
        settings.require_runtime()

        if self._store is None:
            self._store = create_store(settings.database_url)

        chains = settings.enabled_chains()
        if not chains:
            logger.warning("No enabled chains; set CHAINS with a policy_manager_address")

        self._clients = await connect_chain_clients(settings)
        chargers = build_chargers(settings, self._clients)

        indexer = Indexer(self._store, self._clients, settings)
        executor = ChargeExecutor(self._store, chargers, settings)

        logger.info(
            f"Starting relayer on {len(chains)} chain(s)",
            extra={
                "chains": [c.name for c in chains],
                "retry": format_retry_config(executor.retry_config),
                "merchant_allowlist": sorted(settings.merchant_allowlist or []),
            },
        )

        for chain in chains:
            self._tasks.append(
                asyncio.create_task(
                    indexer.run_forever(chain, self._stop_event), name=f"indexer-{chain.chain_id}"
                )
            )
        self._tasks.append(asyncio.create_task(executor.run_forever(self._stop_event), name="executor"))

        if self._serve_api:
            app = create_app(self._store, settings, self._shutdown_state)
            self._server = _ApiServer(
                uvicorn.Config(app, host="0.0.0.0", port=settings.port, log_config=None, access_log=False)
            )
            self._tasks.append(asyncio.create_task(self._server.serve(), name="api"))
            logger.info(f"Health server listening on port {settings.port}")

        for task in self._tasks:
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._stop_event.is_set():
            return
        error = task.exception()
        logger.error(f"Task {task.get_name()} exited unexpectedly: {error}")
        self.request_stop()

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Shutdown requested")
            self._shutdown_state.is_shutting_down = True
            self._stop_event.set()

    async def shutdown(self) -> None:
        """Stop the loops, wait for them to finish and release resources."""
        self.request_stop()
        if self._server is not None:
            self._server.should_exit = True

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=self._settings.shutdown_timeout_seconds)
            for task in pending:
                logger.warning(f"Task {task.get_name()} did not stop in time, cancelling")
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.clear()

        await close_chain_clients(self._clients)
        self._clients = {}
        if self._store is not None:
            await self._store.close()
        logger.info("Relayer stopped")

    async def run(self) -> None:
        """Start, block until SIGINT/SIGTERM, then shut down."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        try:
            await self.start()
            await self._stop_event.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.shutdown()
