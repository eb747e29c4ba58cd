"""
Read-only reconstruction of recovery registry facts from raw ledger state.

Facts are rebuilt by deriving storage keys (storage_keys.py) and reading
global state through the gateway. Every read degrades to an empty value
(False, 0, [], None) when data is missing or unparseable; nothing here
raises to the caller.

Independent point reads are issued concurrently against a single state
root so one answer never mixes two ledger heights.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .config import SentinelSettings
from .envelopes import (
    AccountRecord,
    StoredValue,
    coerce_account_hash,
    coerce_account_hashes,
    coerce_bool,
    coerce_int,
    coerce_int_list,
    coerce_public_key_hex,
)
from .exceptions import SentinelError
from .gateway import LedgerGateway
from .keys import AccountHash, AccountRef, parse_account, to_account_hash
from .logging_utils import ChainLogger, OperationType, get_chain_logger
from .storage_keys import DictionaryKeys, NamedKeys, RecoveryField, StorageLayout

logger = logging.getLogger(__name__)


@dataclass
class AccountStatus:
    account_hash: str
    has_guardians: bool
    guardians: List[str]
    threshold: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_hash": self.account_hash,
            "has_guardians": self.has_guardians,
            "guardians": self.guardians,
            "threshold": self.threshold,
        }


@dataclass
class RecoveryRequest:
    """A recovery request as read back from the ledger."""
    recovery_id: int
    target_account: str
    new_key: str
    approval_count: int = 0
    is_approved: bool = False
    is_finalized: bool = False
    approvals: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recovery_id": str(self.recovery_id),
            "target_account": self.target_account,
            "new_key": self.new_key,
            "approval_count": self.approval_count,
            "is_approved": self.is_approved,
            "is_finalized": self.is_finalized,
            "approvals": dict(self.approvals),
        }


def _account_hash_of(account: Union[str, AccountRef]) -> Optional[AccountHash]:
    try:
        if isinstance(account, str):
            account = parse_account(account)
        return to_account_hash(account)
    except SentinelError as e:
        logger.debug(f"Unparseable account {account!r}: {e}")
        return None


class StateReconstructor:
    """Answers recovery questions from raw ledger state."""

    def __init__(
        self,
        gateway: LedgerGateway,
        settings: Optional[SentinelSettings] = None,
        chain_logger: Optional[ChainLogger] = None,
    ):
        self._gateway = gateway
        self._settings = settings or gateway.settings
        self._layout = StorageLayout(self._settings.storage_layout)
        self._keys = DictionaryKeys if self._layout is StorageLayout.DICTIONARY else NamedKeys
        self._chain_logger = chain_logger or get_chain_logger()

    @property
    def layout(self) -> StorageLayout:
        return self._layout

    async def _state_root(self) -> Optional[str]:
        try:
            return await self._gateway.get_state_root_hash()
        except SentinelError as e:
            logger.warning(f"Could not fetch state root hash: {e}")
            return None

    async def _read(
        self,
        item_key: str,
        root: str,
        holder: Optional[AccountHash] = None,
    ) -> Optional[StoredValue]:
        """Read one slot; None when absent or on any ledger error.

        Dictionary slots live in the registry contract; named keys live on
        the holder account.
        """
        try:
            if self._layout is StorageLayout.DICTIONARY:
                return await self._gateway.get_dictionary_item(item_key, state_root_hash=root)
            if holder is None:
                return None
            return await self._gateway.query_state(holder.display, [item_key], state_root_hash=root)
        except SentinelError as e:
            logger.debug(f"State slot {item_key} unavailable: {e}")
            return None

    @staticmethod
    def _value(stored: Optional[StoredValue]) -> Any:
        return stored.value if stored is not None else None

    # =========================================================================
    # Guardian set
    # =========================================================================

    async def _has_guardians(self, account: AccountHash, root: str) -> bool:
        return coerce_bool(self._value(await self._read(self._keys.initialized(account), root, account)))

    async def _get_guardians(self, account: AccountHash, root: str) -> List[AccountHash]:
        return coerce_account_hashes(self._value(await self._read(self._keys.guardians(account), root, account)))

    async def _get_threshold(self, account: AccountHash, root: str) -> int:
        return coerce_int(self._value(await self._read(self._keys.threshold(account), root, account)))

    @staticmethod
    def _bounded_threshold(account: AccountHash, threshold: int, guardian_count: int) -> int:
        """Keep a stored threshold within 2..guardian_count; 0 without a usable guardian set."""
        bounded = min(max(threshold, 2), guardian_count) if guardian_count >= 2 else 0
        if bounded != threshold:
            logger.warning(
                f"Account {account.display} stores threshold {threshold} "
                f"for {guardian_count} guardians, reading {bounded}"
            )
        return bounded

    async def has_guardians(self, account: Union[str, AccountRef]) -> bool:
        account_hash = _account_hash_of(account)
        root = await self._state_root()
        if account_hash is None or root is None:
            return False
        return await self._has_guardians(account_hash, root)

    async def get_guardians(self, account: Union[str, AccountRef]) -> List[str]:
        """Guardian account hashes in display form, registration order."""
        account_hash = _account_hash_of(account)
        root = await self._state_root()
        if account_hash is None or root is None:
            return []
        return [g.display for g in await self._get_guardians(account_hash, root)]

    async def get_threshold(self, account: Union[str, AccountRef]) -> int:
        account_hash = _account_hash_of(account)
        root = await self._state_root()
        if account_hash is None or root is None:
            return 0
        guardians, threshold = await asyncio.gather(
            self._get_guardians(account_hash, root),
            self._get_threshold(account_hash, root),
        )
        return self._bounded_threshold(account_hash, threshold, len(guardians))

    async def get_account_status(self, account: Union[str, AccountRef]) -> AccountStatus:
        account_hash = _account_hash_of(account)
        root = await self._state_root()
        if account_hash is None or root is None:
            display = account_hash.display if account_hash else ""
            return AccountStatus(display, False, [], 0)

        async with self._chain_logger.operation_context(
            OperationType.STATE_READ, self._gateway.chain_name, account=account_hash.display
        ):
            initialized, guardians, threshold = await asyncio.gather(
                self._has_guardians(account_hash, root),
                self._get_guardians(account_hash, root),
                self._get_threshold(account_hash, root),
            )
        return AccountStatus(
            account_hash=account_hash.display,
            has_guardians=initialized,
            guardians=[g.display for g in guardians],
            threshold=self._bounded_threshold(account_hash, threshold, len(guardians)),
        )

    # =========================================================================
    # Recovery requests
    # =========================================================================

    async def get_active_recovery(self, account: Union[str, AccountRef]) -> Optional[int]:
        """Id of the open recovery for an account, if any."""
        account_hash = _account_hash_of(account)
        root = await self._state_root()
        if account_hash is None or root is None:
            return None
        stored = await self._read(self._keys.active_recovery(account_hash), root, account_hash)
        if stored is None:
            return None
        recovery_id = coerce_int(stored.value, default=-1)
        return recovery_id if recovery_id >= 0 else None

    async def _get_recovery(
        self,
        recovery_id: int,
        root: str,
        holder: Optional[AccountHash],
    ) -> Optional[RecoveryRequest]:
        fields = (
            RecoveryField.ACCOUNT,
            RecoveryField.NEW_KEY,
            RecoveryField.APPROVAL_COUNT,
            RecoveryField.APPROVED,
            RecoveryField.FINALIZED,
        )
        account, new_key, count, approved, finalized = await asyncio.gather(*(
            self._read(self._keys.recovery(recovery_id, f), root, holder) for f in fields
        ))

        target = coerce_account_hash(self._value(account))
        if target is None:
            return None

        request = RecoveryRequest(
            recovery_id=recovery_id,
            target_account=target.display,
            new_key=coerce_public_key_hex(self._value(new_key)),
            approval_count=coerce_int(self._value(count)),
            is_approved=coerce_bool(self._value(approved)),
            is_finalized=coerce_bool(self._value(finalized)),
        )

        if self._layout is StorageLayout.DICTIONARY:
            guardians = await self._get_guardians(target, root)
            flags = await asyncio.gather(*(
                self._read(DictionaryKeys.guardian_approval(recovery_id, g), root) for g in guardians
            ))
            request.approvals = {
                g.display: coerce_bool(self._value(flag)) for g, flag in zip(guardians, flags)
            }
            if guardians and request.approval_count > len(guardians):
                logger.warning(
                    f"Recovery {recovery_id} reports {request.approval_count} approvals "
                    f"for {len(guardians)} guardians"
                )
                request.approval_count = len(guardians)
        return request

    async def get_recovery_by_id(
        self,
        recovery_id: Any,
        holder: Optional[Union[str, AccountRef]] = None,
    ) -> Optional[RecoveryRequest]:
        """Full recovery request, or None when it does not exist.

        `holder` names the account carrying the request's named keys and is
        only consulted for the named-key layout.
        """
        number = coerce_int(recovery_id, default=-1)
        if number < 0:
            return None
        holder_hash = _account_hash_of(holder) if holder is not None else None
        root = await self._state_root()
        if root is None:
            return None
        return await self._get_recovery(number, root, holder_hash)

    async def get_recoveries_for_guardian(self, guardian: Union[str, AccountRef]) -> List[RecoveryRequest]:
        """Open (not finalized) recoveries a guardian is asked to approve."""
        if self._layout is not StorageLayout.DICTIONARY:
            logger.debug("Guardian reverse index is only kept in the dictionary layout")
            return []
        guardian_hash = _account_hash_of(guardian)
        root = await self._state_root()
        if guardian_hash is None or root is None:
            return []

        index = await self._read(DictionaryKeys.guardian_index(guardian_hash), root)
        ids = list(dict.fromkeys(coerce_int_list(self._value(index))))
        if not ids:
            return []

        async with self._chain_logger.operation_context(
            OperationType.STATE_READ, self._gateway.chain_name, guardian=guardian_hash.display
        ) as ctx:
            requests = await asyncio.gather(*(self._get_recovery(i, root, None) for i in ids))
            pending = [r for r in requests if r is not None and not r.is_finalized]
            ctx.metadata["pending"] = len(pending)
        return pending

    # =========================================================================
    # Account record
    # =========================================================================

    async def get_account_keys(self, account: Union[str, AccountRef]) -> Optional[AccountRecord]:
        """Associated keys and action thresholds of an account."""
        account_hash = _account_hash_of(account)
        if account_hash is None:
            return None
        try:
            return await self._gateway.get_account(account_hash)
        except SentinelError as e:
            logger.debug(f"Account {account_hash.display} unavailable: {e}")
            return None
