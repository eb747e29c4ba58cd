"""Account identity primitives: public keys and account hashes.

An account hash is blake2b-256 over the lowercase algorithm name, a zero
separator byte and the raw public key bytes. Two textual forms of it are
part of the storage contract with the deployed registry:

    display: account-hash-<hex>
    debug:   AccountHash(<hex>)
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from .exceptions import InvalidArgumentError

ACCOUNT_HASH_PREFIX = "account-hash-"
ACCOUNT_HASH_LENGTH = 32


def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def _decode_hex(value: str, field: str) -> bytes:
    text = value.strip()
    if text.startswith(("0x", "0X")):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise InvalidArgumentError(
            f"{field} is not valid hex: {value!r}",
            reason=InvalidArgumentError.INVALID_KEY,
            field=field,
        ) from None


class KeyAlgorithm(IntEnum):
    """Signature algorithms and their one-byte tags."""
    ED25519 = 1
    SECP256K1 = 2

    @property
    def key_length(self) -> int:
        return 32 if self is KeyAlgorithm.ED25519 else 33

    @property
    def signature_length(self) -> int:
        return 64

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class AccountHash:
    """32-byte account identifier."""
    value: bytes

    def __post_init__(self) -> None:
        if len(self.value) != ACCOUNT_HASH_LENGTH:
            raise InvalidArgumentError(
                f"Account hash must be {ACCOUNT_HASH_LENGTH} bytes, got {len(self.value)}",
                reason=InvalidArgumentError.INVALID_KEY,
            )

    @property
    def hex(self) -> str:
        return self.value.hex()

    @property
    def display(self) -> str:
        return f"{ACCOUNT_HASH_PREFIX}{self.hex}"

    @property
    def debug(self) -> str:
        return f"AccountHash({self.hex})"

    def __str__(self) -> str:
        return self.display

    @classmethod
    def from_string(cls, value: str, field: str = "account_hash") -> "AccountHash":
        """Parse "account-hash-<hex>", "AccountHash(<hex>)" or bare 64-char hex."""
        if not isinstance(value, str):
            raise InvalidArgumentError(
                f"{field} must be a string", reason=InvalidArgumentError.INVALID_KEY, field=field
            )
        text = value.strip()
        lowered = text.lower()
        if lowered.startswith(ACCOUNT_HASH_PREFIX):
            text = text[len(ACCOUNT_HASH_PREFIX):]
        elif lowered.startswith("accounthash(") and text.endswith(")"):
            text = text[len("AccountHash("):-1]
        raw = _decode_hex(text, field)
        if len(raw) != ACCOUNT_HASH_LENGTH:
            raise InvalidArgumentError(
                f"{field} must be {ACCOUNT_HASH_LENGTH} bytes of hex: {value!r}",
                reason=InvalidArgumentError.INVALID_KEY,
                field=field,
            )
        return cls(raw)


@dataclass(frozen=True)
class PublicKey:
    """Tagged public key (ed25519 or secp256k1)."""
    algorithm: KeyAlgorithm
    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != self.algorithm.key_length:
            raise InvalidArgumentError(
                f"{self.algorithm.label} key must be {self.algorithm.key_length} bytes, "
                f"got {len(self.raw)}",
                reason=InvalidArgumentError.INVALID_KEY,
            )
        if self.algorithm is KeyAlgorithm.SECP256K1 and self.raw[0] not in (2, 3):
            raise InvalidArgumentError(
                "secp256k1 key must be in compressed form",
                reason=InvalidArgumentError.INVALID_KEY,
            )

    @classmethod
    def from_hex(cls, value: str, field: str = "public_key") -> "PublicKey":
        if not isinstance(value, str) or not value.strip():
            raise InvalidArgumentError(
                f"{field} is required", reason=InvalidArgumentError.INVALID_KEY, field=field
            )
        return cls.from_bytes(_decode_hex(value, field), field=field)

    @classmethod
    def from_bytes(cls, data: bytes, field: str = "public_key") -> "PublicKey":
        if not data:
            raise InvalidArgumentError(
                f"{field} is empty", reason=InvalidArgumentError.INVALID_KEY, field=field
            )
        try:
            algorithm = KeyAlgorithm(data[0])
        except ValueError:
            raise InvalidArgumentError(
                f"{field} has unknown algorithm tag {data[0]:#04x}",
                reason=InvalidArgumentError.INVALID_KEY,
                field=field,
            ) from None
        try:
            return cls(algorithm, bytes(data[1:]))
        except InvalidArgumentError as e:
            raise InvalidArgumentError(
                f"{field}: {e.message}", reason=InvalidArgumentError.INVALID_KEY, field=field
            ) from None

    def to_bytes(self) -> bytes:
        return bytes([self.algorithm]) + self.raw

    @property
    def hex(self) -> str:
        return self.to_bytes().hex()

    def account_hash(self) -> AccountHash:
        preimage = self.algorithm.label.encode("ascii") + b"\x00" + self.raw
        return AccountHash(blake2b256(preimage))

    def __str__(self) -> str:
        return self.hex


AccountRef = Union[PublicKey, AccountHash]


def parse_account(value: str, field: str = "account") -> AccountRef:
    """Parse either a public key hex or an account hash string."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered.startswith((ACCOUNT_HASH_PREFIX, "accounthash(")):
            return AccountHash.from_string(value, field=field)
    return PublicKey.from_hex(value, field=field)


def to_account_hash(ref: AccountRef) -> AccountHash:
    if isinstance(ref, PublicKey):
        return ref.account_hash()
    return ref


def normalize_hex(value: str) -> str:
    """Lowercased, trimmed comparison form of a hex identifier."""
    return value.strip().lower()
