"""
Deploy lifecycle tracking.

A tracked deploy moves Pending -> Success | Failed exactly once. Polling is
a bounded loop: the node is asked for an execution result every
`poll_interval` seconds until one appears or `timeout` elapses, in which
case the deploy is marked Failed with `timed_out=True`.

A timeout is not an execution result. A timed-out deploy is polled again
on the next `check` or `wait`, and a real outcome replaces the timeout.

"Deploy not known" answers mean the node has not seen the deploy yet and
keep it Pending; other transient errors are recorded and polling goes on.

The registry keeps at most `max_history` settled deploys; the oldest
settled entries are evicted first. Pending deploys are never evicted.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .envelopes import DeployStatus, ExecutionOutcome
from .exceptions import RPCError, SentinelError
from .gateway import LedgerGateway
from .logging_utils import ChainLogger, OperationType, get_chain_logger

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Timeout waiting for deploy"


@dataclass
class TrackedDeploy:
    """A deploy being tracked to a terminal outcome."""
    deploy_hash: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: DeployStatus = DeployStatus.PENDING
    error_message: Optional[str] = None
    block_hash: Optional[str] = None
    timed_out: bool = False
    polls: int = 0
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_settled(self) -> bool:
        """Terminal on an execution result rather than a timeout."""
        return self.is_terminal and not self.timed_out

    def resolve(self, outcome: ExecutionOutcome, timed_out: bool = False) -> bool:
        """Apply a terminal outcome; a settled deploy ignores later outcomes.

        An execution outcome replaces an earlier timeout. Returns True when
        the status changed.
        """
        if self.is_settled or not outcome.status.is_terminal:
            return False
        if timed_out and self.timed_out:
            return False
        self.status = outcome.status
        self.error_message = outcome.error_message
        self.block_hash = outcome.block_hash
        self.timed_out = timed_out
        self.completed_at = datetime.now(timezone.utc)
        return True

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "deploy_hash": self.deploy_hash,
            "status": self.status.value,
        }
        if self.error_message is not None:
            result["error_message"] = self.error_message
        if self.block_hash is not None:
            result["block_hash"] = self.block_hash
        if self.timed_out:
            result["timed_out"] = True
        return result


class DeployLifecycleTracker:
    """Polls the ledger until deploys reach Success or Failed."""

    def __init__(
        self,
        gateway: LedgerGateway,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        chain_logger: Optional[ChainLogger] = None,
        max_history: int = 1000,
    ):
        polling = gateway.settings.polling
        self._gateway = gateway
        self._poll_interval = poll_interval if poll_interval is not None else polling.interval_seconds
        self._timeout = timeout if timeout is not None else polling.timeout_seconds
        self._chain_logger = chain_logger or get_chain_logger()
        self._max_history = max_history
        self._tracked: Dict[str, TrackedDeploy] = {}

    def _evict_settled(self) -> None:
        settled = [h for h, t in self._tracked.items() if t.is_settled]
        for deploy_hash in settled[:max(0, len(settled) - self._max_history)]:
            del self._tracked[deploy_hash]
            logger.debug(f"Evicted settled deploy {deploy_hash}")

    def track(self, deploy_hash: str) -> TrackedDeploy:
        """Start tracking a deploy (idempotent)."""
        deploy_hash = deploy_hash.strip().lower()
        tracked = self._tracked.get(deploy_hash)
        if tracked is None:
            tracked = TrackedDeploy(deploy_hash=deploy_hash)
            self._tracked[deploy_hash] = tracked
            logger.debug(f"Tracking deploy {deploy_hash}")
        return tracked

    def get(self, deploy_hash: str) -> Optional[TrackedDeploy]:
        return self._tracked.get(deploy_hash.strip().lower())

    def get_all_tracked(self) -> List[TrackedDeploy]:
        return list(self._tracked.values())

    def untrack(self, deploy_hash: str) -> bool:
        return self._tracked.pop(deploy_hash.strip().lower(), None) is not None

    async def check(self, deploy_hash: str) -> TrackedDeploy:
        """Poll the node once and apply any terminal outcome.

        Settled deploys are answered from the registry. Pending and
        timed-out deploys ask the node again.
        """
        tracked = self.track(deploy_hash)
        if tracked.is_settled:
            return tracked

        tracked.polls += 1
        try:
            outcome = await self._gateway.get_execution_outcome(tracked.deploy_hash)
        except RPCError as e:
            if not e.is_unknown_deploy:
                tracked.last_error = e.message
                logger.warning(f"Polling deploy {tracked.deploy_hash} failed: {e.message}")
            return tracked
        except SentinelError as e:
            tracked.last_error = e.message
            logger.warning(f"Polling deploy {tracked.deploy_hash} failed: {e.message}")
            return tracked

        if tracked.resolve(outcome):
            self._chain_logger.log_deploy_outcome(
                tracked.deploy_hash, tracked.status.value, tracked.error_message
            )
            self._evict_settled()
        return tracked

    async def wait(
        self,
        deploy_hash: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> TrackedDeploy:
        """
        Wait for a deploy to reach a terminal status.

        Never raises on timeout: the tracked deploy comes back Failed with
        `timed_out=True`. Cancel the awaiting task to stop early.
        """
        timeout = self._timeout if timeout is None else timeout
        poll_interval = self._poll_interval if poll_interval is None else poll_interval

        tracked = self.track(deploy_hash)
        async with self._chain_logger.operation_context(
            OperationType.DEPLOY_TRACK, self._gateway.chain_name, deploy_hash=tracked.deploy_hash
        ) as ctx:
            loop = asyncio.get_running_loop()
            start_time = loop.time()

            while True:
                tracked = await self.check(tracked.deploy_hash)
                if tracked.is_settled:
                    break

                elapsed = loop.time() - start_time
                if elapsed + poll_interval > timeout:
                    if tracked.resolve(
                        ExecutionOutcome(DeployStatus.FAILED, TIMEOUT_MESSAGE), timed_out=True
                    ):
                        self._chain_logger.log_deploy_outcome(
                            tracked.deploy_hash, tracked.status.value, tracked.error_message, timed_out=True
                        )
                    break

                await asyncio.sleep(poll_interval)

            ctx.metadata["status"] = tracked.status.value
        return tracked

    def get_stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for tracked in self._tracked.values():
            counts[tracked.status.value] = counts.get(tracked.status.value, 0) + 1
        return {"total_tracked": len(self._tracked), "status_breakdown": counts}
