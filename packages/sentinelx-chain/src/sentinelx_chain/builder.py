"""
Unsigned deploy assembly.

A deploy targets either a stored contract entry point (call by hash) or a
bytecode module loaded from disk. Payment is always standard payment of a
fixed amount; chain name and TTL come from settings and gas price is the
ledger constant. With the same inputs and timestamp the builder produces
byte-identical deploys.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Union

from .config import GAS_PRICE, SentinelSettings, load_settings
from .deploy import (
    Deploy,
    ExecutableItem,
    ModuleBytes,
    RuntimeArgs,
    StoredContractByHash,
    make_deploy,
    standard_payment,
)
from .exceptions import ArtifactNotFoundError, InvalidArgumentError
from .keys import PublicKey

if TYPE_CHECKING:
    from .actions import EncodedAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredContractTarget:
    """Entry point of a contract stored on chain."""
    contract_hash: str
    entry_point: str

    def describe(self) -> str:
        return f"hash-{self.contract_hash}::{self.entry_point}"


@dataclass(frozen=True)
class ModuleBytesTarget:
    """Bytecode module executed as the session."""
    path: Path

    def describe(self) -> str:
        return str(self.path)


DeployTarget = Union[StoredContractTarget, ModuleBytesTarget]


class DeployBuilder:
    """Builds unsigned deploys for a caller."""

    def __init__(self, settings: Optional[SentinelSettings] = None):
        self._settings = settings or load_settings()
        self._modules: Dict[Path, bytes] = {}

    def load_module(self, path: Union[str, Path]) -> bytes:
        """Read bytecode from disk (cached per resolved path).

        Raises:
            ArtifactNotFoundError: file missing, unreadable or empty
        """
        resolved = Path(path).expanduser().resolve()
        cached = self._modules.get(resolved)
        if cached is not None:
            return cached
        try:
            module = resolved.read_bytes()
        except OSError as e:
            logger.error(f"Cannot load executable artifact {resolved}: {e.strerror}")
            raise ArtifactNotFoundError(str(resolved), cause=e.strerror) from e
        if not module:
            raise ArtifactNotFoundError(str(resolved), cause="file is empty")
        self._modules[resolved] = module
        return module

    def session_for(self, target: DeployTarget, args: RuntimeArgs) -> ExecutableItem:
        if isinstance(target, StoredContractTarget):
            try:
                contract_hash = bytes.fromhex(target.contract_hash)
            except ValueError:
                contract_hash = b""
            if len(contract_hash) != 32:
                raise InvalidArgumentError(
                    f"Contract hash must be 32 bytes of hex: {target.contract_hash!r}",
                    field="contract_hash",
                )
            return StoredContractByHash(contract_hash, target.entry_point, args)
        return ModuleBytes(self.load_module(target.path), args)

    def build(
        self,
        caller: Union[PublicKey, str],
        target: DeployTarget,
        args: RuntimeArgs,
        payment: int,
        timestamp_ms: Optional[int] = None,
    ) -> Deploy:
        """Assemble an unsigned deploy.

        Args:
            caller: Public key of the account paying for and signing the deploy
            target: Stored contract entry point or bytecode module
            args: Session arguments
            payment: Payment amount in motes
            timestamp_ms: Header timestamp; current time when omitted
        """
        if isinstance(caller, str):
            caller = PublicKey.from_hex(caller, field="caller")
        if isinstance(payment, bool) or not isinstance(payment, int) or payment <= 0:
            raise InvalidArgumentError(f"Payment must be a positive integer, got {payment!r}", field="payment")
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)

        session = self.session_for(target, args)
        deploy = make_deploy(
            account=caller,
            chain_name=self._settings.chain_name,
            session=session,
            payment=standard_payment(payment),
            ttl_ms=self._settings.deploy.ttl_ms,
            gas_price=GAS_PRICE,
            timestamp_ms=timestamp_ms,
        )
        logger.info(
            f"Built deploy {deploy.hash_hex} for {caller.hex} targeting {target.describe()}"
        )
        return deploy

    def build_action(
        self,
        caller: Union[PublicKey, str],
        encoded: "EncodedAction",
        timestamp_ms: Optional[int] = None,
    ) -> Deploy:
        return self.build(caller, encoded.target, encoded.args, encoded.payment, timestamp_ms)
