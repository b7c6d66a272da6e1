"""
Tests for the health endpoints.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from autopay_relayer import __version__
from autopay_relayer.api import ShutdownState, create_app
from autopay_relayer.models import WebhookEventType, WebhookStatus
from autopay_relayer.status import WEBHOOK_FAILURE_THRESHOLD, collect_status

CHAIN_ID = 5042002


class FailingStore:
    async def get_status(self, chain_ids):
        raise RuntimeError("connection refused")


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_root(self, store, settings):
        client = TestClient(create_app(store, settings))
        response = client.get("/")

        assert response.status_code == 200
        assert response.json() == {"service": "AutoPay Relayer", "version": __version__, "health": "/health"}

    @pytest.mark.asyncio
    async def test_ok_when_indexed(self, store, settings):
        """A checkpointed chain and a quiet outbox should be healthy."""
        await store.set_last_indexed_block(CHAIN_ID, 150)
        client = TestClient(create_app(store, settings))

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["chains"] == [{
            "chainId": CHAIN_ID,
            "name": "arc-testnet",
            "lastIndexedBlock": 150,
            "activePolicies": 0,
            "pendingCharges": 0,
            "healthy": True,
        }]
        assert body["retry"].startswith("preset=standard")

    def test_degraded_without_checkpoint(self, store, settings):
        client = TestClient(create_app(store, settings))

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    def test_store_error_is_500(self, settings):
        client = TestClient(create_app(FailingStore(), settings))

        response = client.get("/health")

        assert response.status_code == 500
        assert response.json() == {"status": "error", "error": "connection refused"}

    @pytest.mark.asyncio
    async def test_shutting_down(self, store, settings):
        await store.set_last_indexed_block(CHAIN_ID, 150)
        state = ShutdownState()
        state.is_shutting_down = True
        client = TestClient(create_app(store, settings, state))

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "shutting_down"


class TestCollectStatus:
    """Tests for the status document."""

    @pytest.mark.asyncio
    async def test_failed_webhooks_degrade(self, store, settings):
        """More failed deliveries than the threshold should mark the relayer degraded."""
        await store.set_last_indexed_block(CHAIN_ID, 150)
        for _ in range(WEBHOOK_FAILURE_THRESHOLD + 1):
            webhook_id = await store.queue_webhook("0x01", WebhookEventType.CHARGE_FAILED, {})
            store._webhooks[webhook_id].status = WebhookStatus.FAILED

        status = await collect_status(store, settings)

        assert status["status"] == "degraded"
        assert status["webhooks"] == {"pending": 0, "failed": WEBHOOK_FAILURE_THRESHOLD + 1}

    @pytest.mark.asyncio
    async def test_at_threshold_is_ok(self, store, settings):
        await store.set_last_indexed_block(CHAIN_ID, 150)
        for _ in range(WEBHOOK_FAILURE_THRESHOLD):
            webhook_id = await store.queue_webhook("0x01", WebhookEventType.CHARGE_FAILED, {})
            store._webhooks[webhook_id].status = WebhookStatus.FAILED

        status = await collect_status(store, settings)

        assert status["status"] == "ok"
