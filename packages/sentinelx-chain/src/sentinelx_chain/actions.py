"""
Recovery protocol action encoding.

Every protocol action maps to a discriminator, a typed argument list, a
payment amount and an execution target. The first eight actions share the
recovery executable and carry the discriminator as an `action: U8` first
argument; key rotation actions run their own bytecode modules.

All validation happens here, before any network call. Encoding is pure.

Usage:
    encoder = ActionEncoder(settings)
    encoded = encoder.register_guardians(owner_hex, [g1, g2, g3], threshold=2)
    deploy = DeployBuilder(settings).build_action(owner_hex, encoded)
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .builder import DeployTarget, ModuleBytesTarget, StoredContractTarget
from .clvalue import CLValue
from .config import SentinelSettings, load_settings
from .deploy import RuntimeArgs
from .exceptions import InvalidArgumentError
from .keys import AccountHash, AccountRef, PublicKey, normalize_hex, parse_account, to_account_hash

logger = logging.getLogger(__name__)

MIN_GUARDIANS = 2
MIN_THRESHOLD = 2
U8_MAX = 255
U256_MAX = 2 ** 256 - 1


class ActionKind(IntEnum):
    """Closed set of protocol actions and their discriminators."""
    REGISTER_GUARDIANS = 1
    INITIATE_RECOVERY = 2
    APPROVE_RECOVERY = 3
    CHECK_THRESHOLD = 4
    FINALIZE_RECOVERY = 5
    GET_GUARDIANS = 6
    GET_THRESHOLD = 7
    HAS_GUARDIANS = 8
    ROTATE_ADD_KEY = 9
    ROTATE_REMOVE_KEY = 10
    UPDATE_THRESHOLDS = 11

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")

    @property
    def uses_recovery_executable(self) -> bool:
        return self <= ActionKind.HAS_GUARDIANS


# Registry contract entry points
ENTRY_POINTS = {
    ActionKind.REGISTER_GUARDIANS: "init_guardians",
    ActionKind.INITIATE_RECOVERY: "start_recovery",
    ActionKind.APPROVE_RECOVERY: "approve",
    ActionKind.CHECK_THRESHOLD: "is_approved",
    ActionKind.FINALIZE_RECOVERY: "finalize",
    ActionKind.GET_GUARDIANS: "get_guardians",
    ActionKind.GET_THRESHOLD: "get_threshold",
    ActionKind.HAS_GUARDIANS: "has_guardians",
}


@dataclass(frozen=True)
class GuardianNotice:
    """Who should hear about a guardian-affecting action."""
    target_account: str
    new_key: Optional[str] = None
    recovery_id: Optional[int] = None
    guardians: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_account": self.target_account,
            "new_key": self.new_key,
            "recovery_id": str(self.recovery_id) if self.recovery_id is not None else None,
            "guardians": list(self.guardians),
        }


@dataclass(frozen=True)
class EncodedAction:
    """Typed arguments, payment and target for one action.

    `action` is None for contract installation, which sits outside the
    discriminator set.
    """
    action: Optional[ActionKind]
    args: RuntimeArgs
    payment: int
    target: DeployTarget
    notice: Optional[GuardianNotice] = field(default=None)

    @property
    def label(self) -> str:
        return self.action.label if self.action is not None else "install-contract"


def _parse_u8(value: Any, name: str, reason: str, minimum: int = 0) -> int:
    number = _parse_uint(value, name, reason)
    if not minimum <= number <= U8_MAX:
        raise InvalidArgumentError(
            f"{name} must be between {minimum} and {U8_MAX}, got {number}",
            reason=reason,
            field=name,
        )
    return number


def _parse_uint(value: Any, name: str, reason: str) -> int:
    if isinstance(value, bool):
        raise InvalidArgumentError(f"{name} must be numeric", reason=reason, field=name)
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise InvalidArgumentError(f"{name} must be numeric, got {value!r}", reason=reason, field=name)
        value = int(text)
    if not isinstance(value, int):
        raise InvalidArgumentError(f"{name} must be numeric, got {value!r}", reason=reason, field=name)
    if value < 0:
        raise InvalidArgumentError(f"{name} must not be negative", reason=reason, field=name)
    return value


def parse_recovery_id(value: Any) -> int:
    recovery_id = _parse_uint(value, "recovery_id", InvalidArgumentError.INVALID_RECOVERY_ID)
    if recovery_id > U256_MAX:
        raise InvalidArgumentError(
            "recovery_id exceeds U256",
            reason=InvalidArgumentError.INVALID_RECOVERY_ID,
            field="recovery_id",
        )
    return recovery_id


def _as_account(value: Union[str, AccountRef], name: str) -> AccountRef:
    if isinstance(value, (PublicKey, AccountHash)):
        return value
    return parse_account(value, field=name)


def _as_public_key(value: Union[str, PublicKey], name: str) -> PublicKey:
    if isinstance(value, PublicKey):
        return value
    return PublicKey.from_hex(value, field=name)


def validate_guardians(
    owner: Union[str, AccountRef],
    guardians: Sequence[Union[str, AccountRef]],
    threshold: Any,
) -> Tuple[AccountHash, List[AccountHash], int]:
    """Check a guardian set; returns (owner hash, guardian hashes, threshold).

    Raises InvalidArgumentError with reason:
        invalid_key          unparseable owner or guardian
        too_few_guardians    fewer than two guardians
        self_guardian        owner listed as its own guardian
        duplicate_guardian   same guardian listed twice
        invalid_threshold    threshold outside 2..len(guardians)
    """
    owner_hash = to_account_hash(_as_account(owner, "owner"))

    if isinstance(guardians, (str, bytes)) or len(guardians) < MIN_GUARDIANS:
        raise InvalidArgumentError(
            f"At least {MIN_GUARDIANS} guardians are required",
            reason=InvalidArgumentError.TOO_FEW_GUARDIANS,
            field="guardians",
        )

    seen_text = set()
    seen_hashes = set()
    hashes = []
    for index, guardian in enumerate(guardians):
        guardian_hash = to_account_hash(_as_account(guardian, f"guardians[{index}]"))
        if guardian_hash == owner_hash:
            raise InvalidArgumentError(
                "User cannot be a guardian",
                reason=InvalidArgumentError.SELF_GUARDIAN,
                field="guardians",
            )
        text = normalize_hex(guardian) if isinstance(guardian, str) else str(guardian)
        if text in seen_text or guardian_hash in seen_hashes:
            raise InvalidArgumentError(
                f"Duplicate guardian {guardian_hash.display}",
                reason=InvalidArgumentError.DUPLICATE_GUARDIAN,
                field="guardians",
            )
        seen_text.add(text)
        seen_hashes.add(guardian_hash)
        hashes.append(guardian_hash)

    number = _parse_uint(threshold, "threshold", InvalidArgumentError.INVALID_THRESHOLD)
    if not MIN_THRESHOLD <= number <= min(len(hashes), U8_MAX):
        raise InvalidArgumentError(
            f"Threshold must be between {MIN_THRESHOLD} and {len(hashes)}, got {number}",
            reason=InvalidArgumentError.INVALID_THRESHOLD,
            field="threshold",
        )
    return owner_hash, hashes, number


class ActionEncoder:
    """Encodes protocol actions into runtime args, payment and target."""

    def __init__(self, settings: Optional[SentinelSettings] = None):
        self._settings = settings or load_settings()

    def _recovery(
        self,
        action: ActionKind,
        args: Sequence[Tuple[str, CLValue]],
        notice: Optional[GuardianNotice] = None,
    ) -> EncodedAction:
        settings = self._settings
        if settings.contract_deployed:
            target: DeployTarget = StoredContractTarget(settings.contract_hash, ENTRY_POINTS[action])
            payment = settings.deploy.payment_amount
        else:
            target = ModuleBytesTarget(settings.wasm.recovery_session)
            payment = settings.deploy.session_payment_amount
        items = (("action", CLValue.u8(int(action))),) + tuple(args)
        logger.debug(f"Encoded {action.label} for {target.describe()}")
        return EncodedAction(action, RuntimeArgs(items), payment, target, notice)

    def _module(self, action: ActionKind, path, args: Sequence[Tuple[str, CLValue]]) -> EncodedAction:
        return EncodedAction(
            action,
            RuntimeArgs(tuple(args)),
            self._settings.deploy.session_payment_amount,
            ModuleBytesTarget(path),
        )

    # Guardian set

    def register_guardians(
        self,
        owner: Union[str, AccountRef],
        guardians: Sequence[Union[str, AccountRef]],
        threshold: Any,
    ) -> EncodedAction:
        owner_hash, hashes, number = validate_guardians(owner, guardians, threshold)
        return self._recovery(
            ActionKind.REGISTER_GUARDIANS,
            [
                ("account", CLValue.account_hash(owner_hash)),
                ("guardians", CLValue.account_hash_list(hashes)),
                ("threshold", CLValue.u8(number)),
            ],
            GuardianNotice(
                target_account=owner_hash.display,
                guardians=tuple(h.display for h in hashes),
            ),
        )

    # Recovery lifecycle

    def initiate_recovery(
        self,
        target_account: Union[str, AccountRef],
        new_key: Union[str, PublicKey],
    ) -> EncodedAction:
        account_hash = to_account_hash(_as_account(target_account, "target_account"))
        key = _as_public_key(new_key, "new_key")
        return self._recovery(
            ActionKind.INITIATE_RECOVERY,
            [
                ("account", CLValue.account_hash(account_hash)),
                ("new_key", CLValue.public_key(key)),
            ],
            GuardianNotice(target_account=account_hash.display, new_key=key.hex),
        )

    def approve_recovery(self, recovery_id: Any) -> EncodedAction:
        number = parse_recovery_id(recovery_id)
        return self._recovery(ActionKind.APPROVE_RECOVERY, [("id", CLValue.u256(number))])

    def check_threshold(self, recovery_id: Any) -> EncodedAction:
        number = parse_recovery_id(recovery_id)
        return self._recovery(ActionKind.CHECK_THRESHOLD, [("id", CLValue.u256(number))])

    def finalize_recovery(self, recovery_id: Any) -> EncodedAction:
        number = parse_recovery_id(recovery_id)
        return self._recovery(ActionKind.FINALIZE_RECOVERY, [("id", CLValue.u256(number))])

    # On-chain queries

    def _account_query(self, action: ActionKind, account: Union[str, AccountRef]) -> EncodedAction:
        account_hash = to_account_hash(_as_account(account, "account"))
        return self._recovery(action, [("account", CLValue.account_hash(account_hash))])

    def get_guardians(self, account: Union[str, AccountRef]) -> EncodedAction:
        return self._account_query(ActionKind.GET_GUARDIANS, account)

    def get_threshold(self, account: Union[str, AccountRef]) -> EncodedAction:
        return self._account_query(ActionKind.GET_THRESHOLD, account)

    def has_guardians(self, account: Union[str, AccountRef]) -> EncodedAction:
        return self._account_query(ActionKind.HAS_GUARDIANS, account)

    # Key rotation

    def rotate_add_key(self, new_key: Union[str, AccountRef], weight: Any = 1) -> EncodedAction:
        account_hash = to_account_hash(_as_account(new_key, "new_key"))
        number = _parse_u8(weight, "weight", InvalidArgumentError.INVALID_WEIGHT, minimum=1)
        return self._module(
            ActionKind.ROTATE_ADD_KEY,
            self._settings.wasm.add_key,
            [
                ("new_key", CLValue.account_key(account_hash)),
                ("weight", CLValue.u8(number)),
            ],
        )

    def rotate_remove_key(self, remove_key: Union[str, AccountRef]) -> EncodedAction:
        account_hash = to_account_hash(_as_account(remove_key, "remove_key"))
        return self._module(
            ActionKind.ROTATE_REMOVE_KEY,
            self._settings.wasm.remove_key,
            [("remove_key", CLValue.account_key(account_hash))],
        )

    def update_thresholds(self, deployment_threshold: Any, key_management_threshold: Any) -> EncodedAction:
        deployment = _parse_u8(
            deployment_threshold, "deployment_threshold", InvalidArgumentError.INVALID_THRESHOLD, minimum=1
        )
        key_management = _parse_u8(
            key_management_threshold, "key_management_threshold", InvalidArgumentError.INVALID_THRESHOLD, minimum=1
        )
        # The ledger refuses a deployment threshold above key management.
        if deployment > key_management:
            raise InvalidArgumentError(
                "deployment_threshold cannot exceed key_management_threshold",
                reason=InvalidArgumentError.INVALID_THRESHOLD,
                field="deployment_threshold",
            )
        return self._module(
            ActionKind.UPDATE_THRESHOLDS,
            self._settings.wasm.update_thresholds,
            [
                ("deployment_threshold", CLValue.u8(deployment)),
                ("key_management_threshold", CLValue.u8(key_management)),
            ],
        )

    # Installation

    def install_contract(self) -> EncodedAction:
        """One-time registry installation from its bytecode."""
        return EncodedAction(
            None,
            RuntimeArgs(),
            self._settings.deploy.install_payment_amount,
            ModuleBytesTarget(self._settings.wasm.recovery_registry),
        )

    def encode(self, action: Union[ActionKind, int], **params: Any) -> EncodedAction:
        """Encode by discriminator, e.g. encode(3, recovery_id=7)."""
        try:
            kind = ActionKind(action)
        except ValueError:
            raise InvalidArgumentError(f"Unknown action {action!r}", field="action") from None
        handler = getattr(self, kind.name.lower())
        try:
            inspect.signature(handler).bind(**params)
        except TypeError as e:
            raise InvalidArgumentError(f"Bad parameters for {kind.label}: {e}", field="action") from None
        return handler(**params)
