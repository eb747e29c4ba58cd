"""Exception hierarchy for sentinelx-chain.

All package errors inherit from SentinelError so callers at the request
boundary can map them to responses in one place:

- InvalidArgumentError: malformed input, rejected before any network call
- DeployFormatError: a deploy document that cannot be parsed or whose hash
  does not match its content
- ArtifactNotFoundError: executable bytecode missing on disk (fatal)
- RPCError / LedgerHTTPError / ResponseFormatError: node communication

Usage:
    from sentinelx_chain.exceptions import InvalidArgumentError

    try:
        encoded = encoder.register_guardians(owner, guardians, threshold)
    except InvalidArgumentError as e:
        return {"success": False, **e.to_dict()}
"""
from __future__ import annotations

from typing import Any, Optional


class SentinelError(Exception):
    """Base exception for all sentinelx-chain errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "SENTINEL_ERROR"

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
        """Convert exception to a response-friendly dict."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Input errors
# =============================================================================

class InvalidArgumentError(SentinelError, ValueError):
    """Malformed input supplied to an encoder or builder."""

    error_code = "INVALID_ARGUMENT"

    # Rejection reasons
    INVALID_KEY = "invalid_key"
    TOO_FEW_GUARDIANS = "too_few_guardians"
    SELF_GUARDIAN = "self_guardian"
    DUPLICATE_GUARDIAN = "duplicate_guardian"
    INVALID_THRESHOLD = "invalid_threshold"
    INVALID_RECOVERY_ID = "invalid_recovery_id"
    INVALID_WEIGHT = "invalid_weight"
    INVALID_VALUE = "invalid_value"

    def __init__(
        self,
        message: str,
        reason: str = INVALID_VALUE,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["reason"] = reason
        if field:
            details["field"] = field
        super().__init__(message, details=details)
        self.reason = reason
        self.field = field


class DeployFormatError(InvalidArgumentError):
    """Deploy JSON or binary data is malformed or fails hash validation."""

    error_code = "DEPLOY_FORMAT_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, reason=self.INVALID_VALUE, details=details)


# =============================================================================
# Build-time resource errors
# =============================================================================

class ArtifactNotFoundError(SentinelError, FileNotFoundError):
    """Executable bytecode could not be loaded.

    A missing artifact is a deployment misconfiguration; callers must not
    retry.
    """

    error_code = "ARTIFACT_NOT_FOUND"

    def __init__(self, path: str, cause: Optional[str] = None) -> None:
        message = f"Executable artifact not found: {path}"
        if cause:
            message = f"{message} ({cause})"
        super().__init__(message, details={"path": path})
        self.path = path


# =============================================================================
# Node communication errors
# =============================================================================

class RPCError(SentinelError):
    """The node answered with a JSON-RPC error object."""

    error_code = "RPC_ERROR"

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None) -> None:
        details: dict[str, Any] = {}
        if code is not None:
            details["rpc_code"] = code
        if data is not None:
            details["rpc_data"] = data
        super().__init__(message, details=details)
        self.code = code
        self.data = data

    @property
    def is_unknown_deploy(self) -> bool:
        """True when the node does not know the requested deploy (yet)."""
        text = f"{self.message} {self.data or ''}".lower()
        return any(marker in text for marker in _UNKNOWN_DEPLOY_MARKERS)


_UNKNOWN_DEPLOY_MARKERS = (
    "deploy not known",
    "no such deploy",
    "deploy not found",
    "transaction not known",
    "no such transaction",
)


class LedgerHTTPError(SentinelError):
    """Non-2xx HTTP status or unusable body from the node endpoint."""

    error_code = "LEDGER_HTTP_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message, details={"status_code": status_code, "body": body})
        self.status_code = status_code
        self.body = body


class ResponseFormatError(SentinelError):
    """The node response did not match the expected schema."""

    error_code = "RESPONSE_FORMAT_ERROR"
