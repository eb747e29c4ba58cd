"""
Request boundary for the recovery protocol.

RecoveryService wires the encoder, builder, reconstructor, gateway and
tracker together and exposes one coroutine per protocol action. Build
methods return the unsigned deploy for an external wallet to sign; the
signed document comes back through submit_signed_deploy.

Usage:
    async with LedgerGateway(settings) as gateway:
        service = RecoveryService(gateway)
        payload = await service.register_guardians(owner, [g1, g2], threshold=2)
        # ... wallet signs payload.deploy_json ...
        submitted = await service.submit_signed_deploy(signed_json, wait=True)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .actions import ActionEncoder, EncodedAction, GuardianNotice, parse_recovery_id
from .builder import DeployBuilder
from .config import SentinelSettings
from .deploy import Deploy
from .envelopes import AccountRecord, DeployStatus
from .exceptions import InvalidArgumentError
from .gateway import LedgerGateway, SubmissionResult
from .keys import AccountRef, PublicKey, parse_account, to_account_hash
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .state import AccountStatus, RecoveryRequest, StateReconstructor
from .tracker import DeployLifecycleTracker, TrackedDeploy

logger = logging.getLogger(__name__)

Caller = Union[str, PublicKey]


@dataclass
class DeployPayload:
    """An unsigned deploy ready for signing."""
    action: str
    deploy_json: Dict[str, Any]
    deploy_hash: str
    notice: Optional[GuardianNotice] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "action": self.action,
            "deploy_hash": self.deploy_hash,
            "deploy": self.deploy_json,
        }
        if self.notice is not None:
            result["notice"] = self.notice.to_dict()
        return result


@dataclass
class SubmittedDeploy:
    submission: SubmissionResult
    tracked: Optional[TrackedDeploy] = None

    @property
    def success(self) -> bool:
        if not self.submission.success:
            return False
        return self.tracked is None or self.tracked.status is not DeployStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        result = self.submission.to_dict()
        if self.tracked is not None:
            result["execution"] = self.tracked.to_dict()
        return result


class RecoveryService:
    """One entry point per recovery protocol action."""

    def __init__(
        self,
        gateway: LedgerGateway,
        settings: Optional[SentinelSettings] = None,
        encoder: Optional[ActionEncoder] = None,
        builder: Optional[DeployBuilder] = None,
        reconstructor: Optional[StateReconstructor] = None,
        tracker: Optional[DeployLifecycleTracker] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._settings = settings or gateway.settings
        self._gateway = gateway
        self._chain_logger = chain_logger or get_chain_logger()
        self._encoder = encoder or ActionEncoder(self._settings)
        self._builder = builder or DeployBuilder(self._settings)
        self._reconstructor = reconstructor or StateReconstructor(gateway, self._settings)
        self._tracker = tracker or DeployLifecycleTracker(gateway)

    @property
    def reconstructor(self) -> StateReconstructor:
        return self._reconstructor

    @property
    def tracker(self) -> DeployLifecycleTracker:
        return self._tracker

    async def _payload(
        self,
        caller: Caller,
        encoded: EncodedAction,
        timestamp_ms: Optional[int] = None,
    ) -> DeployPayload:
        async with self._chain_logger.operation_context(
            OperationType.DEPLOY_BUILD, self._settings.chain_name, action=encoded.label
        ) as ctx:
            deploy = self._builder.build_action(caller, encoded, timestamp_ms)
            ctx.metadata["deploy_hash"] = deploy.hash_hex
        return DeployPayload(
            action=encoded.label,
            deploy_json=deploy.to_json(),
            deploy_hash=deploy.hash_hex,
            notice=encoded.notice,
        )

    # =========================================================================
    # Deploy builders
    # =========================================================================

    async def register_guardians(
        self,
        owner: Caller,
        guardians: Sequence[str],
        threshold: Any,
        timestamp_ms: Optional[int] = None,
    ) -> DeployPayload:
        """Register a guardian set; the owner signs."""
        owner_key = owner if isinstance(owner, PublicKey) else PublicKey.from_hex(owner, field="owner")
        encoded = self._encoder.register_guardians(owner_key, guardians, threshold)
        return await self._payload(owner_key, encoded, timestamp_ms)

    async def initiate_recovery(
        self,
        initiator: Caller,
        target_account: Union[str, AccountRef],
        new_key: Union[str, PublicKey],
        timestamp_ms: Optional[int] = None,
    ) -> DeployPayload:
        encoded = self._encoder.initiate_recovery(target_account, new_key)
        return await self._payload(initiator, encoded, timestamp_ms)

    async def approve_recovery(self, guardian: Caller, recovery_id: Any, timestamp_ms: Optional[int] = None) -> DeployPayload:
        encoded = self._encoder.approve_recovery(recovery_id)
        return await self._payload(guardian, encoded, timestamp_ms)

    async def check_threshold(self, signer: Caller, recovery_id: Any, timestamp_ms: Optional[int] = None) -> DeployPayload:
        encoded = self._encoder.check_threshold(recovery_id)
        return await self._payload(signer, encoded, timestamp_ms)

    async def finalize_recovery(self, signer: Caller, recovery_id: Any, timestamp_ms: Optional[int] = None) -> DeployPayload:
        encoded = self._encoder.finalize_recovery(recovery_id)
        return await self._payload(signer, encoded, timestamp_ms)

    async def build_get_guardians(self, signer: Caller, account: Union[str, AccountRef]) -> DeployPayload:
        return await self._payload(signer, self._encoder.get_guardians(account))

    async def build_get_threshold(self, signer: Caller, account: Union[str, AccountRef]) -> DeployPayload:
        return await self._payload(signer, self._encoder.get_threshold(account))

    async def build_has_guardians(self, signer: Caller, account: Union[str, AccountRef]) -> DeployPayload:
        return await self._payload(signer, self._encoder.has_guardians(account))

    async def rotate_add_key(
        self,
        account: Caller,
        new_key: Union[str, AccountRef],
        weight: Any = 1,
        timestamp_ms: Optional[int] = None,
    ) -> DeployPayload:
        """Add an associated key to the recovered account."""
        return await self._payload(account, self._encoder.rotate_add_key(new_key, weight), timestamp_ms)

    async def rotate_remove_key(
        self,
        account: Caller,
        remove_key: Union[str, AccountRef],
        timestamp_ms: Optional[int] = None,
    ) -> DeployPayload:
        return await self._payload(account, self._encoder.rotate_remove_key(remove_key), timestamp_ms)

    async def update_thresholds(
        self,
        account: Caller,
        deployment_threshold: Any,
        key_management_threshold: Any,
        timestamp_ms: Optional[int] = None,
    ) -> DeployPayload:
        encoded = self._encoder.update_thresholds(deployment_threshold, key_management_threshold)
        return await self._payload(account, encoded, timestamp_ms)

    async def install_contract(self, installer: Caller, timestamp_ms: Optional[int] = None) -> DeployPayload:
        return await self._payload(installer, self._encoder.install_contract(), timestamp_ms)

    # =========================================================================
    # Reads
    # =========================================================================

    async def account_status(self, account: Union[str, AccountRef]) -> AccountStatus:
        return await self._reconstructor.get_account_status(account)

    async def active_recovery(self, account: Union[str, AccountRef]) -> Optional[RecoveryRequest]:
        """The open recovery for an account, fully read back."""
        recovery_id = await self._reconstructor.get_active_recovery(account)
        if recovery_id is None:
            return None
        return await self._reconstructor.get_recovery_by_id(recovery_id, holder=account)

    async def recovery(
        self,
        recovery_id: Any,
        holder: Optional[Union[str, AccountRef]] = None,
    ) -> Optional[RecoveryRequest]:
        return await self._reconstructor.get_recovery_by_id(parse_recovery_id(recovery_id), holder)

    async def pending_for_guardian(self, guardian: Union[str, AccountRef]) -> List[RecoveryRequest]:
        return await self._reconstructor.get_recoveries_for_guardian(guardian)

    async def account_keys(self, account: Union[str, AccountRef]) -> Optional[AccountRecord]:
        return await self._reconstructor.get_account_keys(account)

    async def guardian_notice(
        self,
        target_account: Union[str, AccountRef],
        new_key: Union[str, PublicKey],
        recovery_id: Any,
        initiator: Optional[Union[str, AccountRef]] = None,
    ) -> GuardianNotice:
        """Guardians to notify about a recovery, read from the ledger.

        The initiator, when a guardian, is left out.
        """
        target = target_account if not isinstance(target_account, str) else parse_account(target_account, "target_account")
        target_hash = to_account_hash(target)
        key = new_key if isinstance(new_key, PublicKey) else PublicKey.from_hex(new_key, field="new_key")

        guardians = await self._reconstructor.get_guardians(target_hash)
        if initiator is not None:
            initiator_ref = initiator if not isinstance(initiator, str) else parse_account(initiator, "initiator")
            excluded = to_account_hash(initiator_ref).display
            guardians = [g for g in guardians if g != excluded]

        return GuardianNotice(
            target_account=target_hash.display,
            new_key=key.hex,
            recovery_id=parse_recovery_id(recovery_id),
            guardians=tuple(guardians),
        )

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit_signed_deploy(
        self,
        deploy_json: Union[str, Mapping[str, Any]],
        wait: bool = False,
    ) -> SubmittedDeploy:
        """Validate a signed deploy document, submit it and optionally wait.

        Raises:
            DeployFormatError: the document is malformed or its hash does not match
            InvalidArgumentError: no approvals, or an approval does not verify
        """
        deploy = Deploy.from_json(deploy_json)
        if not deploy.is_signed:
            raise InvalidArgumentError("Deploy carries no approvals", field="approvals")
        invalid = deploy.invalid_approvals()
        if invalid:
            raise InvalidArgumentError(
                "Deploy approval signature does not verify",
                field="approvals",
                details={"signers": [a.signer.hex for a in invalid]},
            )

        submission = await self._gateway.submit_deploy_raw(deploy_json)
        if not submission.success:
            logger.warning(f"Deploy {deploy.hash_hex} rejected: {submission.error}")
            return SubmittedDeploy(submission)

        deploy_hash = submission.deploy_hash or deploy.hash_hex
        if wait:
            return SubmittedDeploy(submission, await self._tracker.wait(deploy_hash))
        self._tracker.track(deploy_hash)
        return SubmittedDeploy(submission)

    async def deploy_status(self, deploy_hash: str) -> TrackedDeploy:
        """Poll once for a deploy's execution outcome."""
        return await self._tracker.check(deploy_hash)
