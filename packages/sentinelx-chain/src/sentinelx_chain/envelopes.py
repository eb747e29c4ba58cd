"""Normalization of node response envelopes.

Node versions and client libraries disagree on response shapes: the same
field appears in snake_case or camelCase, values arrive as typed
{cl_type, bytes, parsed} documents or as pre-decoded {data: ...} objects,
and execution results moved from a per-block array to a single versioned
object. Each function here maps every known variant of one response type
onto one canonical type, so callers never branch on shapes themselves.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .clvalue import CLType, CLValue, Key, KeyKind
from .exceptions import ResponseFormatError, SentinelError
from .keys import ACCOUNT_HASH_PREFIX, AccountHash, PublicKey

logger = logging.getLogger(__name__)


def _pick(obj: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present key among snake_case/camelCase spellings."""
    for name in names:
        if name in obj:
            return obj[name]
    return default


# =============================================================================
# Stored values
# =============================================================================

@dataclass
class StoredValue:
    """Canonical form of a global-state read."""
    kind: str
    value: Any
    cl_type: Optional[CLType] = None

    @property
    def is_cl_value(self) -> bool:
        return self.kind == "CLValue"


def _from_cl_value(cl_value: Any) -> StoredValue:
    if isinstance(cl_value, dict):
        if "cl_type" in cl_value and "bytes" in cl_value:
            try:
                decoded = CLValue.from_json(cl_value)
                return StoredValue("CLValue", decoded.value, decoded.cl_type)
            except SentinelError as e:
                logger.debug(f"Falling back to parsed CLValue: {e}")
                return StoredValue("CLValue", cl_value.get("parsed"))
        if "data" in cl_value:
            return StoredValue("CLValue", cl_value["data"])
        if "parsed" in cl_value:
            return StoredValue("CLValue", cl_value["parsed"])
    return StoredValue("CLValue", cl_value)


def normalize_stored_value(raw: Any) -> Optional[StoredValue]:
    """Normalize a query/dictionary result into a StoredValue.

    Accepted variants:
        {"stored_value": {...}}                 RPC result wrapper
        {"CLValue": {cl_type, bytes, parsed}}   typed value
        {"CLValue": {"data": ...}}              pre-decoded value
        {"CLValue": [...]}                      raw array
        {cl_type, bytes, parsed}                bare typed value
        {"Account": {...}} / {"AddressableEntity": {...}}
        [...] / scalar                          raw value
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        if "stored_value" in raw:
            return normalize_stored_value(raw["stored_value"])
        if "storedValue" in raw:
            return normalize_stored_value(raw["storedValue"])
        if "CLValue" in raw:
            return _from_cl_value(raw["CLValue"])
        if "cl_type" in raw and "bytes" in raw:
            return _from_cl_value(raw)
        if "Account" in raw:
            return StoredValue("Account", raw["Account"])
        if "AddressableEntity" in raw:
            return StoredValue("Account", raw["AddressableEntity"])
        if "data" in raw:
            return StoredValue("CLValue", raw["data"])
        if len(raw) == 1:
            (kind, value), = raw.items()
            return StoredValue(kind, value)
        return StoredValue("Unknown", raw)
    return StoredValue("CLValue", raw)


# =============================================================================
# Value coercion (defaults instead of errors)
# =============================================================================

def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def coerce_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            return default
    if isinstance(value, dict) and "data" in value:
        return coerce_int(value["data"], default)
    return default


def coerce_account_hash(value: Any) -> Optional[AccountHash]:
    try:
        if isinstance(value, AccountHash):
            return value
        if isinstance(value, (bytes, bytearray)):
            return AccountHash(bytes(value))
        if isinstance(value, list) and all(isinstance(b, int) for b in value):
            return AccountHash(bytes(value))
        if isinstance(value, Key) and value.kind is KeyKind.ACCOUNT:
            return AccountHash(value.data)
        if isinstance(value, PublicKey):
            return value.account_hash()
        if isinstance(value, str):
            return AccountHash.from_string(value)
        if isinstance(value, dict):
            if "data" in value:
                return coerce_account_hash(value["data"])
            if "Account" in value:
                return coerce_account_hash(value["Account"])
    except (SentinelError, ValueError):
        return None
    return None


def coerce_account_hashes(value: Any) -> List[AccountHash]:
    if isinstance(value, dict) and "data" in value:
        value = value["data"]
    if not isinstance(value, list):
        return []
    hashes = []
    for item in value:
        account_hash = coerce_account_hash(item)
        if account_hash is None:
            logger.debug(f"Skipping unparseable account hash entry {item!r}")
            continue
        hashes.append(account_hash)
    return hashes


def coerce_public_key_hex(value: Any) -> str:
    if isinstance(value, PublicKey):
        return value.hex
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, dict) and "data" in value:
        return coerce_public_key_hex(value["data"])
    return ""


def coerce_int_list(value: Any) -> List[int]:
    if isinstance(value, dict) and "data" in value:
        value = value["data"]
    if not isinstance(value, list):
        return []
    result = []
    for item in value:
        number = coerce_int(item, default=-1)
        if number >= 0:
            result.append(number)
    return result


# =============================================================================
# Accounts
# =============================================================================

@dataclass
class AssociatedKey:
    account_hash: str
    weight: int


@dataclass
class AccountRecord:
    """Canonical account record."""
    account_hash: str
    associated_keys: List[AssociatedKey] = field(default_factory=list)
    deployment_threshold: int = 1
    key_management_threshold: int = 1
    named_keys: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_hash": self.account_hash,
            "associated_keys": [
                {"account_hash": k.account_hash, "weight": k.weight} for k in self.associated_keys
            ],
            "action_thresholds": {
                "deployment": self.deployment_threshold,
                "key_management": self.key_management_threshold,
            },
        }


def normalize_account(raw: Any) -> Optional[AccountRecord]:
    """Normalize an account / addressable-entity record, or None."""
    stored = normalize_stored_value(raw)
    if stored is None or stored.kind != "Account" or not isinstance(stored.value, dict):
        return None
    account = stored.value

    associated = []
    for entry in _pick(account, "associated_keys", "associatedKeys", default=[]) or []:
        if not isinstance(entry, dict):
            continue
        associated.append(AssociatedKey(
            account_hash=str(_pick(entry, "account_hash", "accountHash", default="")),
            weight=coerce_int(entry.get("weight"), default=0),
        ))

    thresholds = _pick(account, "action_thresholds", "actionThresholds", default={}) or {}
    named_keys = {}
    for entry in _pick(account, "named_keys", "namedKeys", default=[]) or []:
        if isinstance(entry, dict) and "name" in entry:
            named_keys[entry["name"]] = str(entry.get("key", ""))

    account_hash = str(_pick(account, "account_hash", "accountHash", default="") or "")
    if account_hash and not account_hash.startswith(ACCOUNT_HASH_PREFIX):
        account_hash = ACCOUNT_HASH_PREFIX + account_hash
    return AccountRecord(
        account_hash=account_hash,
        associated_keys=associated,
        deployment_threshold=coerce_int(thresholds.get("deployment"), default=0) or 1,
        key_management_threshold=coerce_int(
            _pick(thresholds, "key_management", "keyManagement"), default=0
        ) or 1,
        named_keys=named_keys,
    )


# =============================================================================
# Chain info and submission
# =============================================================================

def normalize_state_root_hash(result: Any) -> str:
    if isinstance(result, str) and result:
        return result
    if isinstance(result, dict):
        value = _pick(result, "state_root_hash", "stateRootHash")
        if isinstance(value, str) and value:
            return value
    raise ResponseFormatError("Response carries no state root hash", details={"result": result})


def normalize_submitted_hash(result: Any) -> str:
    """Deploy hash from account_put_deploy (or transaction) results."""
    if isinstance(result, str) and result:
        return result
    if isinstance(result, dict):
        value = _pick(result, "deploy_hash", "deployHash")
        if isinstance(value, str) and value:
            return value
        transaction = _pick(result, "transaction_hash", "transactionHash")
        if isinstance(transaction, dict):
            for variant in ("Deploy", "Version1"):
                if isinstance(transaction.get(variant), str):
                    return transaction[variant]
    raise ResponseFormatError("Response carries no deploy hash", details={"result": result})


# =============================================================================
# Execution results
# =============================================================================

class DeployStatus(str, Enum):
    """Lifecycle of a submitted deploy."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not DeployStatus.PENDING


@dataclass(frozen=True)
class ExecutionOutcome:
    status: DeployStatus
    error_message: Optional[str] = None
    block_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"status": self.status.value}
        if self.error_message is not None:
            result["error_message"] = self.error_message
        return result


PENDING = ExecutionOutcome(DeployStatus.PENDING)


def _outcome_from_legacy(result: Any, block_hash: Optional[str]) -> ExecutionOutcome:
    """{"Success": {...}} / {"Failure": {"error_message": ...}}."""
    if not isinstance(result, dict):
        return PENDING
    if "Success" in result:
        return ExecutionOutcome(DeployStatus.SUCCESS, block_hash=block_hash)
    if "Failure" in result:
        failure = result["Failure"] or {}
        message = _pick(failure, "error_message", "errorMessage") if isinstance(failure, dict) else None
        return ExecutionOutcome(DeployStatus.FAILED, message or "Unknown error", block_hash)
    if "error_message" in result or "errorMessage" in result:
        return _outcome_from_error_field(result, block_hash)
    return PENDING


def _outcome_from_error_field(result: Dict[str, Any], block_hash: Optional[str]) -> ExecutionOutcome:
    message = _pick(result, "error_message", "errorMessage")
    if message:
        return ExecutionOutcome(DeployStatus.FAILED, str(message), block_hash)
    return ExecutionOutcome(DeployStatus.SUCCESS, block_hash=block_hash)


def _outcome_from_versioned(result: Any, block_hash: Optional[str]) -> ExecutionOutcome:
    """{"Version2": {"error_message": ...}} / {"Version1": {legacy}}."""
    if not isinstance(result, dict):
        return PENDING
    if "Version2" in result:
        body = result["Version2"]
        if not isinstance(body, dict):
            return PENDING
        return _outcome_from_error_field(body, block_hash)
    if "Version1" in result:
        return _outcome_from_legacy(result["Version1"], block_hash)
    return _outcome_from_legacy(result, block_hash)


def normalize_execution_outcome(record: Any) -> ExecutionOutcome:
    """Map an info_get_deploy result onto a three-state outcome.

    Variants:
        {"execution_results": [{"block_hash", "result": {Success|Failure}}]}   legacy
        {"execution_info": {"block_hash", "execution_result": {VersionN}}}     current
        {"execution_info": null} / {"execution_results": []}                   pending
    """
    if not isinstance(record, dict):
        return PENDING

    info = _pick(record, "execution_info", "executionInfo")
    if info is not None or "execution_info" in record or "executionInfo" in record:
        if not isinstance(info, dict):
            return PENDING
        result = _pick(info, "execution_result", "executionResult")
        if result is None:
            return PENDING
        return _outcome_from_versioned(result, _pick(info, "block_hash", "blockHash"))

    results = _pick(record, "execution_results", "executionResults")
    if isinstance(results, list):
        if not results:
            return PENDING
        first = results[0]
        if not isinstance(first, dict):
            return PENDING
        return _outcome_from_legacy(first.get("result", first), _pick(first, "block_hash", "blockHash"))

    single = _pick(record, "execution_result", "executionResult")
    if single is not None:
        return _outcome_from_versioned(single, None)
    return PENDING
