"""
Tests for webhook payloads and signatures.
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone

from autopay_relayer.models import WebhookEventType
from autopay_relayer.webhooks import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_payload,
    generate_webhook_secret,
    payload_for_policy,
    serialize_payload,
    sign_payload,
    signature_headers,
    verify_signature,
)

from chain_fakes import BASE_TIME, MERCHANT, PAYER, make_policy, policy_id


class TestPayload:
    """Tests for payload construction."""

    def test_build_payload_shape(self):
        """Payload should carry event, timestamp and camelCased data."""
        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        payload = build_payload(
            WebhookEventType.CHARGE_SUCCEEDED,
            chain_id=5042002,
            policy_id=policy_id(1),
            payer=PAYER,
            merchant=MERCHANT,
            timestamp=ts,
            amount=9_990_000,
            protocol_fee=24_975,
            tx_hash="0xabc",
            reason=None,
        )

        assert payload["event"] == "charge.succeeded"
        assert payload["timestamp"] == ts.isoformat()
        assert payload["data"] == {
            "policyId": policy_id(1),
            "chainId": 5042002,
            "payer": PAYER,
            "merchant": MERCHANT,
            "amount": "9990000",
            "protocolFee": "24975",
            "txHash": "0xabc",
        }

    def test_payload_for_policy(self):
        policy = make_policy(policy_id(2), next_charge_at=BASE_TIME)
        payload = payload_for_policy(WebhookEventType.POLICY_REVOKED, policy, end_time=123)

        assert payload["event"] == "policy.revoked"
        assert payload["data"]["policyId"] == policy.id
        assert payload["data"]["endTime"] == 123


class TestSignature:
    """Tests for HMAC signing and verification."""

    def test_sign_matches_hmac_sha256(self):
        body = serialize_payload({"b": 1, "a": "x"})
        expected = hmac.new(b"secret", body.encode(), hashlib.sha256).hexdigest()
        assert sign_payload(body, "secret") == expected

    def test_serialization_is_compact(self):
        assert serialize_payload({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_verify(self):
        """Only the matching secret and body should verify."""
        body = serialize_payload({"event": "charge.failed"})
        signature = sign_payload(body, "whsec_1")

        assert verify_signature(body, signature, "whsec_1") is True
        assert verify_signature(body, signature, "whsec_2") is False
        assert verify_signature(body + " ", signature, "whsec_1") is False
        assert verify_signature(body, "", "whsec_1") is False

    def test_headers(self):
        body = serialize_payload({"event": "policy.created"})
        headers = signature_headers(body, "whsec_1", timestamp=BASE_TIME)

        assert headers[SIGNATURE_HEADER] == sign_payload(body, "whsec_1")
        assert TIMESTAMP_HEADER in headers

    def test_generated_secrets_are_unique(self):
        assert generate_webhook_secret() != generate_webhook_secret()
