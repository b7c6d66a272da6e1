"""
Retry policy for hard charge failures.

Everything here is a pure function of (attempt, error, config). The
executor asks ``decide`` what to do after a hard-fail and applies the
answer; no state is kept in this module.

Usage:
    from autopay_relayer.retry import RETRY_PRESETS, decide

    decision = decide(attempt=2, error="request timeout", config=RETRY_PRESETS["standard"])
    if decision.should_retry:
        ...
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple, Union


class RetryPreset(str, Enum):
    """Named retry configurations."""
    AGGRESSIVE = "aggressive"
    STANDARD = "standard"
    CONSERVATIVE = "conservative"
    CUSTOM = "custom"


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for charge retry behavior.

    Attributes:
        preset: Name of the preset this config came from
        max_retries: Hard-fail attempts allowed before flagging the policy
        backoff_ms: Delay before each retry; the last entry repeats
        max_consecutive_failures: Soft-fails allowed before cancelling the policy
    """

    preset: RetryPreset = RetryPreset.STANDARD
    max_retries: int = 3
    backoff_ms: Tuple[int, ...] = (60_000, 300_000, 900_000)
    max_consecutive_failures: int = 3

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        if any(ms < 0 for ms in self.backoff_ms):
            raise ValueError("backoff_ms entries must be >= 0")


RETRY_PRESETS: Dict[str, RetryConfig] = {
    RetryPreset.AGGRESSIVE.value: RetryConfig(
        preset=RetryPreset.AGGRESSIVE,
        max_retries=3,
        backoff_ms=(30_000, 60_000, 120_000),
        max_consecutive_failures=3,
    ),
    RetryPreset.STANDARD.value: RetryConfig(
        preset=RetryPreset.STANDARD,
        max_retries=3,
        backoff_ms=(60_000, 300_000, 900_000),
        max_consecutive_failures=3,
    ),
    RetryPreset.CONSERVATIVE.value: RetryConfig(
        preset=RetryPreset.CONSERVATIVE,
        max_retries=5,
        backoff_ms=(300_000, 900_000, 1_800_000, 3_600_000, 7_200_000),
        max_consecutive_failures=5,
    ),
}


# Terminal markers are checked first so "insufficient gas" never reads as a gas race.
_TERMINAL_MARKERS = (
    "revert",
    "insufficient",
    "policy not active",
    "policynotactive",
    "not active",
    "too soon",
    "toosoontocharge",
    "invalid signature",
    "malformed",
)

_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "rate limit",
    "429",
    "502",
    "503",
    "nonce",
)


def _message(error: Union[BaseException, str, None]) -> str:
    if error is None:
        return ""
    return str(error).lower()


def is_retryable_error(error: Union[BaseException, str, None]) -> bool:
    """Classify an error as transient (worth retrying) or terminal.

    Unknown errors are treated as terminal.
    """
    message = _message(error)
    if not message:
        return False

    if any(marker in message for marker in _TERMINAL_MARKERS):
        return False

    if any(marker in message for marker in _RETRYABLE_MARKERS):
        return True

    # Gas price races resolve on their own
    if "gas" in message:
        return True

    return False


def is_policy_inactive_error(error: Union[BaseException, str, None]) -> bool:
    """True when the chain reports the policy as no longer active."""
    message = _message(error)
    return "not active" in message or "policynotactive" in message


def should_retry(
    attempt: int,
    error: Union[BaseException, str, None],
    config: RetryConfig,
) -> bool:
    """Return True only while attempt < max_retries and the error is retryable.

    Args:
        attempt: 1-based number of the attempt that just failed
        error: The failure reason or exception
        config: Retry configuration

    Returns:
        True if the policy should be tried again on a later run
    """
    if attempt >= config.max_retries:
        return False
    return is_retryable_error(error)


def next_retry_delay_ms(attempt: int, config: RetryConfig) -> int:
    """Backoff before the retry that follows ``attempt`` (1-based)."""
    if not config.backoff_ms:
        return 0
    index = min(max(attempt - 1, 0), len(config.backoff_ms) - 1)
    return config.backoff_ms[index]


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of evaluating a hard-fail against the retry table."""
    attempt: int
    retryable: bool
    should_retry: bool
    exhausted: bool
    delay_ms: Optional[int] = None
    reason: str = field(default="")


def decide(
    attempt: int,
    error: Union[BaseException, str, None],
    config: RetryConfig,
) -> RetryDecision:
    """Evaluate one hard-fail.

    ``exhausted`` is set once the attempt count reaches ``max_retries``,
    regardless of how the error classifies.
    """
    retryable = is_retryable_error(error)
    retry = should_retry(attempt, error, config)
    return RetryDecision(
        attempt=attempt,
        retryable=retryable,
        should_retry=retry,
        exhausted=attempt >= config.max_retries,
        delay_ms=next_retry_delay_ms(attempt, config) if retry else None,
        reason=str(error) if error is not None else "",
    )


def _format_ms(ms: int) -> str:
    if ms >= 3_600_000 and ms % 3_600_000 == 0:
        return f"{ms // 3_600_000}h"
    if ms >= 60_000 and ms % 60_000 == 0:
        return f"{ms // 60_000}m"
    if ms >= 1_000 and ms % 1_000 == 0:
        return f"{ms // 1_000}s"
    return f"{ms}ms"


def format_retry_config(config: RetryConfig) -> str:
    """Human-readable one-liner used by the CLI and startup log."""
    backoff = ", ".join(_format_ms(ms) for ms in config.backoff_ms) or "none"
    return (
        f"preset={config.preset.value} max_retries={config.max_retries} "
        f"backoff=[{backoff}] max_consecutive_failures={config.max_consecutive_failures}"
    )


__all__ = [
    "RetryPreset",
    "RetryConfig",
    "RetryDecision",
    "RETRY_PRESETS",
    "is_retryable_error",
    "is_policy_inactive_error",
    "should_retry",
    "next_retry_delay_ms",
    "decide",
    "format_retry_config",
]
