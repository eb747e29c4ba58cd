"""Social recovery client: deploy encoding, state reconstruction and deploy tracking."""

from .actions import ActionEncoder, ActionKind, EncodedAction, GuardianNotice
from .builder import DeployBuilder, ModuleBytesTarget, StoredContractTarget
from .clvalue import CLType, CLValue, Key
from .config import SentinelSettings, load_settings
from .deploy import Approval, Deploy, DeployHeader, RuntimeArgs
from .envelopes import (
    AccountRecord,
    DeployStatus,
    ExecutionOutcome,
    StoredValue,
    normalize_execution_outcome,
    normalize_stored_value,
)
from .exceptions import (
    ArtifactNotFoundError,
    DeployFormatError,
    InvalidArgumentError,
    LedgerHTTPError,
    ResponseFormatError,
    RPCError,
    SentinelError,
)
from .gateway import LedgerGateway, SubmissionResult
from .keys import AccountHash, KeyAlgorithm, PublicKey
from .service import DeployPayload, RecoveryService, SubmittedDeploy
from .state import AccountStatus, RecoveryRequest, StateReconstructor
from .storage_keys import DictionaryKeys, NamedKeys, StorageLayout
from .tracker import DeployLifecycleTracker, TrackedDeploy

__all__ = [
    "ActionEncoder",
    "ActionKind",
    "EncodedAction",
    "GuardianNotice",
    "DeployBuilder",
    "ModuleBytesTarget",
    "StoredContractTarget",
    "CLType",
    "CLValue",
    "Key",
    "SentinelSettings",
    "load_settings",
    "Approval",
    "Deploy",
    "DeployHeader",
    "RuntimeArgs",
    "AccountRecord",
    "DeployStatus",
    "ExecutionOutcome",
    "StoredValue",
    "normalize_execution_outcome",
    "normalize_stored_value",
    "ArtifactNotFoundError",
    "DeployFormatError",
    "InvalidArgumentError",
    "LedgerHTTPError",
    "ResponseFormatError",
    "RPCError",
    "SentinelError",
    "LedgerGateway",
    "SubmissionResult",
    "AccountHash",
    "KeyAlgorithm",
    "PublicKey",
    "DeployPayload",
    "RecoveryService",
    "SubmittedDeploy",
    "AccountStatus",
    "RecoveryRequest",
    "StateReconstructor",
    "DictionaryKeys",
    "NamedKeys",
    "StorageLayout",
    "DeployLifecycleTracker",
    "TrackedDeploy",
]
