"""
Structured logging for ledger operations.

Features:
- Operation context timing (build, submit, track, reconstruct)
- RPC call logging with endpoint masking
- Deploy lifecycle logging (submitted, outcome)
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of ledger operations."""
    DEPLOY_BUILD = "deploy_build"
    DEPLOY_SUBMIT = "deploy_submit"
    DEPLOY_TRACK = "deploy_track"
    STATE_READ = "state_read"


@dataclass
class OperationContext:
    """Context for a ledger operation."""
    operation_id: str
    operation_type: OperationType
    chain: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain": self.chain,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class RPCCallLog:
    """Log entry for an RPC call."""
    method: str
    endpoint_url: str
    chain: str
    request_id: int
    duration_ms: float
    success: bool
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "endpoint_url": mask_url(self.endpoint_url),
            "chain": self.chain,
            "request_id": self.request_id,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


def mask_url(url: str) -> str:
    """Mask query parameters (may carry API keys)."""
    if "?" in url:
        base = url.split("?")[0]
        return f"{base}?<params_masked>"
    return url


class ChainLogger:
    """
    Logger for ledger operations.

    Provides structured logging with operation context tracking, RPC call
    records and deploy lifecycle events. Records go through the standard
    logging module with an `extra` payload for structured handlers.
    """

    def __init__(self, name: str = "sentinelx_chain", max_history: int = 1000):
        self._logger = logging.getLogger(name)
        self._operation_counter = 0
        self._rpc_calls: List[RPCCallLog] = []
        self._max_history = max_history

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain: str,
        **metadata,
    ):
        """
        Context manager for timing an operation.

        Usage:
            async with chain_logger.operation_context(OperationType.DEPLOY_SUBMIT, "casper-test") as ctx:
                ctx.metadata["deploy_hash"] = deploy_hash
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain=chain,
            metadata=metadata,
        )
        self._logger.debug(
            f"Starting {operation_type.value} on {chain}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)
        except Exception as e:
            ctx.complete(success=False, error=str(e))
            raise
        finally:
            level = logging.DEBUG if ctx.success else logging.WARNING
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {chain} in {ctx.duration_ms or 0:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_rpc_call(
        self,
        method: str,
        endpoint_url: str,
        chain: str,
        request_id: int,
        duration_ms: float,
        success: bool,
        error_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        log_entry = RPCCallLog(
            method=method,
            endpoint_url=endpoint_url,
            chain=chain,
            request_id=request_id,
            duration_ms=duration_ms,
            success=success,
            error_code=error_code,
            error_message=error_message,
        )
        self._rpc_calls.append(log_entry)
        if len(self._rpc_calls) > self._max_history:
            self._rpc_calls = self._rpc_calls[-self._max_history:]

        self._logger.log(
            logging.DEBUG if success else logging.WARNING,
            f"RPC {method} to {chain} in {duration_ms:.0f}ms (success={success})",
            extra={"rpc_call": log_entry.to_dict()},
        )

    def log_deploy_submitted(self, deploy_hash: str, chain: str, account: str) -> None:
        self._logger.info(
            f"Deploy submitted: {deploy_hash} on {chain}",
            extra={"deploy": {"deploy_hash": deploy_hash, "chain": chain, "account": account}},
        )

    def log_deploy_outcome(
        self,
        deploy_hash: str,
        status: str,
        error_message: Optional[str] = None,
        timed_out: bool = False,
    ) -> None:
        if status == "success":
            self._logger.info(f"Deploy succeeded: {deploy_hash}")
            return
        self._logger.warning(
            f"Deploy failed: {deploy_hash} - {error_message}"
            + (" (timed out)" if timed_out else ""),
            extra={"deploy": {
                "deploy_hash": deploy_hash,
                "status": status,
                "error_message": error_message,
                "timed_out": timed_out,
            }},
        )

    def get_rpc_metrics(self) -> Dict[str, Any]:
        if not self._rpc_calls:
            return {"total_calls": 0}

        successful = [c for c in self._rpc_calls if c.success]
        latencies = [c.duration_ms for c in successful]
        return {
            "total_calls": len(self._rpc_calls),
            "successful_calls": len(successful),
            "failed_calls": len(self._rpc_calls) - len(successful),
            "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0,
        }


_chain_logger: Optional[ChainLogger] = None


def get_chain_logger() -> ChainLogger:
    """Get the global chain logger instance."""
    global _chain_logger
    if _chain_logger is None:
        _chain_logger = ChainLogger()
    return _chain_logger


def setup_logging(level: str = "INFO", format_string: Optional[str] = None) -> None:
    """Set up root logging for scripts and services embedding the package."""
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(level=getattr(logging, level.upper()), format=format_string)
    logging.getLogger("sentinelx_chain").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
