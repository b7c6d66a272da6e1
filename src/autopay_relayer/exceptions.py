"""Exception hierarchy for the relayer.

All relayer-specific exceptions inherit from RelayerException, which
carries a machine-readable error code and a details dict so that the
status API and the CLI can render failures uniformly.

Usage:
    from autopay_relayer.exceptions import RelayerException, RPCError

    try:
        await client.get_latest_block()
    except RPCError as e:
        logger.warning(f"RPC failed: {e}", extra=e.to_dict())
"""
from __future__ import annotations

from typing import Any, List, Optional, Tuple


class RelayerException(Exception):
    """Base exception for all relayer errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "CONFIGURATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "RELAYER_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a serializable dict."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Configuration & Input Errors
# =============================================================================

class ConfigurationError(RelayerException):
    """Missing or invalid configuration."""

    error_code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if setting:
            details["setting"] = setting
        super().__init__(message, details=details)


class ValidationError(RelayerException):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class PolicyNotFoundError(RelayerException):
    """Policy is not present in the store."""

    error_code = "POLICY_NOT_FOUND"

    def __init__(self, chain_id: int, policy_id: str) -> None:
        super().__init__(
            f"Policy '{policy_id}' not found on chain {chain_id}",
            details={"chain_id": chain_id, "policy_id": policy_id},
        )


# =============================================================================
# Chain Errors
# =============================================================================

class ChainError(RelayerException):
    """Base class for blockchain-related errors."""

    error_code = "CHAIN_ERROR"

    def __init__(
        self,
        message: str,
        chain_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if chain_id is not None:
            details["chain_id"] = chain_id
        super().__init__(message, details=details)


class RPCError(ChainError):
    """JSON-RPC call returned an error object."""

    error_code = "RPC_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        chain_id: Optional[int] = None,
        method: Optional[str] = None,
    ) -> None:
        self.code = code
        self.data = data
        details: dict[str, Any] = {}
        if code is not None:
            details["rpc_code"] = code
        if method:
            details["method"] = method
        super().__init__(message, chain_id=chain_id, details=details)


class AllEndpointsFailedError(ChainError):
    """Raised when every RPC endpoint for a chain has failed."""

    error_code = "ALL_ENDPOINTS_FAILED"

    def __init__(self, chain_id: int, errors: List[Tuple[str, str]]) -> None:
        self.errors = errors
        error_summary = "; ".join([f"{url}: {err}" for url, err in errors[:3]])
        super().__init__(
            f"All RPC endpoints failed for chain {chain_id}. Errors: {error_summary}",
            chain_id=chain_id,
        )


class ChainIDMismatchError(ChainError):
    """Raised when an endpoint reports a different chain id than configured."""

    error_code = "CHAIN_ID_MISMATCH"

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(
            f"Chain ID mismatch: expected {expected}, got {received}",
            chain_id=expected,
            details={"received": received},
        )


class ConfirmationTimeoutError(ChainError):
    """Transaction was not confirmed within the allowed window."""

    error_code = "CONFIRMATION_TIMEOUT"

    def __init__(self, tx_hash: str, timeout_seconds: float, chain_id: Optional[int] = None) -> None:
        self.tx_hash = tx_hash
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"timeout waiting for confirmation of {tx_hash} after {timeout_seconds:.0f}s",
            chain_id=chain_id,
            details={"tx_hash": tx_hash, "timeout_seconds": timeout_seconds},
        )


# =============================================================================
# Store Errors
# =============================================================================

class StoreError(RelayerException):
    """Store operation failed."""

    error_code = "STORE_ERROR"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


__all__ = [
    "RelayerException",
    "ConfigurationError",
    "ValidationError",
    "PolicyNotFoundError",
    "ChainError",
    "RPCError",
    "AllEndpointsFailedError",
    "ChainIDMismatchError",
    "ConfirmationTimeoutError",
    "StoreError",
]
