"""Small helpers shared by the long-running loops."""
from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone

POLICY_ID_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


async def wait_for_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; return True as soon as the stop event is set."""
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


def is_policy_id(value: str) -> bool:
    return bool(POLICY_ID_RE.match(value))


def from_unix(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
