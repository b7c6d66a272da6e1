"""Webhook payloads and the signing contract merchants verify against.

Payloads are written to the outbox by the indexer and executor; a
separate delivery worker posts them with the headers produced by
``signature_headers``. Signatures are hex HMAC-SHA256 over the exact
request body.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from datetime import datetime
from typing import Any, Dict, Optional

from .models import Policy, WebhookEventType, utc_now

SIGNATURE_HEADER = "X-AutoPay-Signature"
TIMESTAMP_HEADER = "X-AutoPay-Timestamp"

# Token amounts travel as decimal strings to survive JSON number limits
_AMOUNT_FIELDS = frozenset({"amount", "protocol_fee", "charge_amount", "spending_cap"})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _serialize(key: str, value: Any) -> Any:
    if key in _AMOUNT_FIELDS:
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    return value


def build_payload(
    event_type: WebhookEventType,
    *,
    chain_id: int,
    policy_id: str,
    payer: str,
    merchant: str,
    timestamp: Optional[datetime] = None,
    **fields: Any,
) -> Dict[str, Any]:
    """Build ``{event, timestamp, data}`` for one notification.

    Extra keyword fields are added to ``data`` in camelCase; ``None``
    values are dropped.
    """
    data: Dict[str, Any] = {
        "policyId": policy_id,
        "chainId": chain_id,
        "payer": payer,
        "merchant": merchant,
    }
    for key, value in fields.items():
        if value is None:
            continue
        data[_camel(key)] = _serialize(key, value)

    return {
        "event": event_type.value,
        "timestamp": (timestamp or utc_now()).isoformat(),
        "data": data,
    }


def payload_for_policy(event_type: WebhookEventType, policy: Policy, **fields: Any) -> Dict[str, Any]:
    return build_payload(
        event_type,
        chain_id=policy.chain_id,
        policy_id=policy.id,
        payer=policy.payer,
        merchant=policy.merchant,
        **fields,
    )


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Compact JSON body, the exact bytes that get signed."""
    return json.dumps(payload, separators=(",", ":"), default=str)


def sign_payload(payload: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the body."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    """Constant-time check of a signature produced by ``sign_payload``."""
    if not signature or not secret:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def signature_headers(payload: str, secret: str, timestamp: Optional[datetime] = None) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_payload(payload, secret),
        TIMESTAMP_HEADER: (timestamp or utc_now()).isoformat(),
    }


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)
