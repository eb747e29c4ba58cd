"""Storage key derivation for recovery registry state.

These strings must match the deployed contract's own formatting byte for
byte. A mismatch does not fail loudly: the lookup simply finds nothing.

Two layouts exist on chain:

Named keys on the querying account (display form of the account hash):
    grp_init_account-hash-<hex>
    grp_guardians_account-hash-<hex>
    grp_threshold_account-hash-<hex>
    grp_active_account-hash-<hex>
    grp_rec_<id>_<field>

Contract dictionary "d" (debug form of the account hash):
    i/g/t/a AccountHash(<hex>)     initialized, guardians, threshold, active id
    c                              recovery counter
    ra/rk/rc/ro/rf <id>            target, new key, count, approved, finalized
    rp<id>_AccountHash(<hex>)      per-guardian approval
    grAccountHash(<hex>)           pending recovery ids for a guardian
"""
from __future__ import annotations

from enum import Enum

from .keys import AccountHash

NAMED_KEY_PREFIX = "grp_"
RECOVERY_COUNTER_KEY = "c"


class StorageLayout(str, Enum):
    DICTIONARY = "dictionary"
    NAMED_KEYS = "named_keys"


class RecoveryField(str, Enum):
    """Per-recovery fields, named as in the named-key layout."""
    ACCOUNT = "account"
    NEW_KEY = "new_key"
    APPROVAL_COUNT = "approval_count"
    APPROVED = "approved"
    FINALIZED = "finalized"


_DICTIONARY_FIELD_PREFIX = {
    RecoveryField.ACCOUNT: "ra",
    RecoveryField.NEW_KEY: "rk",
    RecoveryField.APPROVAL_COUNT: "rc",
    RecoveryField.APPROVED: "ro",
    RecoveryField.FINALIZED: "rf",
}


class NamedKeys:
    """Named-key slots on the querying account."""

    @staticmethod
    def initialized(account: AccountHash) -> str:
        return f"{NAMED_KEY_PREFIX}init_{account.display}"

    @staticmethod
    def guardians(account: AccountHash) -> str:
        return f"{NAMED_KEY_PREFIX}guardians_{account.display}"

    @staticmethod
    def threshold(account: AccountHash) -> str:
        return f"{NAMED_KEY_PREFIX}threshold_{account.display}"

    @staticmethod
    def active_recovery(account: AccountHash) -> str:
        return f"{NAMED_KEY_PREFIX}active_{account.display}"

    @staticmethod
    def recovery(recovery_id: int, field: RecoveryField) -> str:
        return f"{NAMED_KEY_PREFIX}rec_{recovery_id}_{field.value}"


class DictionaryKeys:
    """Item keys in the registry contract dictionary."""

    @staticmethod
    def initialized(account: AccountHash) -> str:
        return f"i{account.debug}"

    @staticmethod
    def guardians(account: AccountHash) -> str:
        return f"g{account.debug}"

    @staticmethod
    def threshold(account: AccountHash) -> str:
        return f"t{account.debug}"

    @staticmethod
    def active_recovery(account: AccountHash) -> str:
        return f"a{account.debug}"

    @staticmethod
    def recovery_counter() -> str:
        return RECOVERY_COUNTER_KEY

    @staticmethod
    def recovery(recovery_id: int, field: RecoveryField) -> str:
        return f"{_DICTIONARY_FIELD_PREFIX[field]}{recovery_id}"

    @staticmethod
    def guardian_approval(recovery_id: int, guardian: AccountHash) -> str:
        return f"rp{recovery_id}_{guardian.debug}"

    @staticmethod
    def guardian_index(guardian: AccountHash) -> str:
        return f"gr{guardian.debug}"
