"""Deploy primitives: header, executable items, approvals and hashing.

A deploy hash is blake2b-256 over the serialized header; the header embeds
the body hash, blake2b-256 over payment bytes followed by session bytes.
Approvals sit outside both, so signing never changes the hash.

The JSON form matches what wallet signers consume and return:

    {"deploy": {"hash", "header", "payment", "session", "approvals"}}
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from .clvalue import (
    CLValue,
    decode_bytes_vec,
    decode_string,
    decode_u8,
    decode_u32,
    decode_u64,
    encode_bytes_vec,
    encode_string,
    encode_u8,
    encode_u32,
    encode_u64,
)
from .exceptions import DeployFormatError, InvalidArgumentError
from .keys import KeyAlgorithm, PublicKey, blake2b256

logger = logging.getLogger(__name__)

HASH_LENGTH = 32
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Time helpers
# =============================================================================

def format_timestamp(timestamp_ms: int) -> str:
    """Millisecond epoch -> ISO-8601 UTC with millisecond precision."""
    dt = _EPOCH + timedelta(milliseconds=timestamp_ms)
    return f"{dt:%Y-%m-%dT%H:%M:%S}.{timestamp_ms % 1000:03d}Z"


def parse_timestamp(value: str) -> int:
    """ISO-8601 UTC -> millisecond epoch."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        raise DeployFormatError(f"Invalid timestamp {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


_TTL_UNITS = (
    ("day", 86_400_000),
    ("h", 3_600_000),
    ("m", 60_000),
    ("s", 1_000),
    ("ms", 1),
)
_TTL_PARSE_UNITS = {
    "ms": 1,
    "s": 1_000,
    "m": 60_000,
    "min": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
    "day": 86_400_000,
    "days": 86_400_000,
}
_TTL_TOKEN = re.compile(r"(\d+)\s*(ms|min|days|day|d|h|m|s)")


def humanize_ttl(ttl_ms: int) -> str:
    """1800000 -> "30m"; 5400000 -> "1h 30m"."""
    if ttl_ms <= 0:
        raise InvalidArgumentError("TTL must be positive", reason=InvalidArgumentError.INVALID_VALUE)
    parts = []
    remaining = ttl_ms
    for unit, size in _TTL_UNITS:
        count, remaining = divmod(remaining, size)
        if count:
            parts.append(f"{count}{unit}")
    return " ".join(parts)


def parse_ttl(value: Union[str, int]) -> int:
    """Inverse of humanize_ttl; bare integers are milliseconds."""
    if isinstance(value, int):
        return value
    text = value.strip()
    if text.isdigit():
        return int(text)
    total = 0
    position = 0
    for match in _TTL_TOKEN.finditer(text):
        if text[position:match.start()].strip():
            break
        total += int(match.group(1)) * _TTL_PARSE_UNITS[match.group(2)]
        position = match.end()
    if total <= 0 or text[position:].strip():
        raise DeployFormatError(f"Invalid TTL {value!r}")
    return total


# =============================================================================
# Runtime args and executable items
# =============================================================================

@dataclass(frozen=True)
class RuntimeArgs:
    """Ordered named arguments."""
    items: Tuple[Tuple[str, CLValue], ...] = ()

    @classmethod
    def from_map(cls, mapping: Mapping[str, CLValue]) -> "RuntimeArgs":
        return cls(tuple(mapping.items()))

    def get(self, name: str) -> Optional[CLValue]:
        for key, value in self.items:
            if key == name:
                return value
        return None

    def names(self) -> List[str]:
        return [key for key, _ in self.items]

    def to_bytes(self) -> bytes:
        out = encode_u32(len(self.items))
        for name, value in self.items:
            out += encode_string(name) + value.to_bytes()
        return out

    @classmethod
    def from_bytes(cls, data: bytes, offset: int) -> Tuple["RuntimeArgs", int]:
        count, offset = decode_u32(data, offset)
        items = []
        for _ in range(count):
            name, offset = decode_string(data, offset)
            value, offset = CLValue.from_bytes(data, offset)
            items.append((name, value))
        return cls(tuple(items)), offset

    def to_json(self) -> list:
        return [[name, value.to_json()] for name, value in self.items]

    @classmethod
    def from_json(cls, obj: Any) -> "RuntimeArgs":
        if not isinstance(obj, list):
            raise DeployFormatError("args must be a list of [name, value] pairs")
        items = []
        for entry in obj:
            if not isinstance(entry, (list, tuple)) or len(entry) != 2 or not isinstance(entry[0], str):
                raise DeployFormatError(f"Malformed runtime arg {entry!r}")
            items.append((entry[0], CLValue.from_json(entry[1])))
        return cls(tuple(items))


@dataclass(frozen=True)
class ModuleBytes:
    """Raw executable bytecode with arguments. Empty bytes = standard payment."""
    module_bytes: bytes
    args: RuntimeArgs

    TAG = 0

    def to_bytes(self) -> bytes:
        return encode_u8(self.TAG) + encode_bytes_vec(self.module_bytes) + self.args.to_bytes()

    def to_json(self) -> dict:
        return {"ModuleBytes": {"module_bytes": self.module_bytes.hex(), "args": self.args.to_json()}}


@dataclass(frozen=True)
class StoredContractByHash:
    """Call an entry point of a stored contract addressed by hash."""
    hash: bytes
    entry_point: str
    args: RuntimeArgs

    TAG = 1

    def to_bytes(self) -> bytes:
        return (
            encode_u8(self.TAG)
            + self.hash
            + encode_string(self.entry_point)
            + self.args.to_bytes()
        )

    def to_json(self) -> dict:
        return {
            "StoredContractByHash": {
                "hash": self.hash.hex(),
                "entry_point": self.entry_point,
                "args": self.args.to_json(),
            }
        }


@dataclass(frozen=True)
class StoredContractByName:
    """Call an entry point of a contract stored under a caller named key."""
    name: str
    entry_point: str
    args: RuntimeArgs

    TAG = 2

    def to_bytes(self) -> bytes:
        return (
            encode_u8(self.TAG)
            + encode_string(self.name)
            + encode_string(self.entry_point)
            + self.args.to_bytes()
        )

    def to_json(self) -> dict:
        return {
            "StoredContractByName": {
                "name": self.name,
                "entry_point": self.entry_point,
                "args": self.args.to_json(),
            }
        }


ExecutableItem = Union[ModuleBytes, StoredContractByHash, StoredContractByName]


def executable_from_bytes(data: bytes, offset: int = 0) -> Tuple[ExecutableItem, int]:
    tag, offset = decode_u8(data, offset)
    if tag == ModuleBytes.TAG:
        module, offset = decode_bytes_vec(data, offset)
        args, offset = RuntimeArgs.from_bytes(data, offset)
        return ModuleBytes(module, args), offset
    if tag == StoredContractByHash.TAG:
        if offset + HASH_LENGTH > len(data):
            raise DeployFormatError("Truncated contract hash")
        contract_hash = data[offset:offset + HASH_LENGTH]
        offset += HASH_LENGTH
        entry_point, offset = decode_string(data, offset)
        args, offset = RuntimeArgs.from_bytes(data, offset)
        return StoredContractByHash(contract_hash, entry_point, args), offset
    if tag == StoredContractByName.TAG:
        name, offset = decode_string(data, offset)
        entry_point, offset = decode_string(data, offset)
        args, offset = RuntimeArgs.from_bytes(data, offset)
        return StoredContractByName(name, entry_point, args), offset
    raise DeployFormatError(f"Unsupported executable item tag {tag}")


def executable_from_json(obj: Any) -> ExecutableItem:
    if not isinstance(obj, dict) or len(obj) != 1:
        raise DeployFormatError("Executable item must be a single-variant object")
    (variant, body), = obj.items()
    if not isinstance(body, dict):
        raise DeployFormatError(f"{variant} body must be an object")
    try:
        if variant == "ModuleBytes":
            return ModuleBytes(bytes.fromhex(body["module_bytes"]), RuntimeArgs.from_json(body["args"]))
        if variant == "StoredContractByHash":
            contract_hash = bytes.fromhex(body["hash"])
            if len(contract_hash) != HASH_LENGTH:
                raise DeployFormatError("Contract hash must be 32 bytes")
            return StoredContractByHash(contract_hash, body["entry_point"], RuntimeArgs.from_json(body["args"]))
        if variant == "StoredContractByName":
            return StoredContractByName(body["name"], body["entry_point"], RuntimeArgs.from_json(body["args"]))
    except KeyError as e:
        raise DeployFormatError(f"{variant} is missing field {e.args[0]!r}") from None
    except (TypeError, ValueError) as e:
        if isinstance(e, DeployFormatError):
            raise
        raise DeployFormatError(f"Malformed {variant}: {e}") from None
    raise DeployFormatError(f"Unsupported executable item {variant!r}")


def standard_payment(amount: int) -> ModuleBytes:
    """Payment item that charges `amount` motes from the caller's main purse."""
    return ModuleBytes(b"", RuntimeArgs.from_map({"amount": CLValue.u512(amount)}))


# =============================================================================
# Header, approvals, deploy
# =============================================================================

def _decode_hash(data: bytes, offset: int) -> Tuple[bytes, int]:
    end = offset + HASH_LENGTH
    if end > len(data):
        raise DeployFormatError("Truncated hash")
    return data[offset:end], end


def _decode_public_key(data: bytes, offset: int) -> Tuple[PublicKey, int]:
    tag, _ = decode_u8(data, offset)
    length = 33 if tag == KeyAlgorithm.ED25519 else 34
    raw = data[offset:offset + length]
    try:
        return PublicKey.from_bytes(raw), offset + length
    except InvalidArgumentError as e:
        raise DeployFormatError(f"Invalid public key: {e.message}") from None


def _decode_signature(data: bytes, offset: int) -> Tuple[bytes, int]:
    end = offset + 65
    if end > len(data):
        raise DeployFormatError("Truncated signature")
    return data[offset:end], end

@dataclass(frozen=True)
class DeployHeader:
    account: PublicKey
    timestamp: int
    ttl: int
    gas_price: int
    body_hash: bytes
    chain_name: str
    dependencies: Tuple[bytes, ...] = ()

    def to_bytes(self) -> bytes:
        out = self.account.to_bytes()
        out += encode_u64(self.timestamp)
        out += encode_u64(self.ttl)
        out += encode_u64(self.gas_price)
        out += self.body_hash
        out += encode_u32(len(self.dependencies)) + b"".join(self.dependencies)
        out += encode_string(self.chain_name)
        return out

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> Tuple["DeployHeader", int]:
        account, offset = _decode_public_key(data, offset)
        timestamp, offset = decode_u64(data, offset)
        ttl, offset = decode_u64(data, offset)
        gas_price, offset = decode_u64(data, offset)
        body_hash, offset = _decode_hash(data, offset)
        count, offset = decode_u32(data, offset)
        dependencies = []
        for _ in range(count):
            dependency, offset = _decode_hash(data, offset)
            dependencies.append(dependency)
        chain_name, offset = decode_string(data, offset)
        header = cls(
            account=account,
            timestamp=timestamp,
            ttl=ttl,
            gas_price=gas_price,
            body_hash=body_hash,
            chain_name=chain_name,
            dependencies=tuple(dependencies),
        )
        return header, offset

    def hash(self) -> bytes:
        return blake2b256(self.to_bytes())

    def to_json(self) -> dict:
        return {
            "account": self.account.hex,
            "timestamp": format_timestamp(self.timestamp),
            "ttl": humanize_ttl(self.ttl),
            "gas_price": self.gas_price,
            "body_hash": self.body_hash.hex(),
            "dependencies": [d.hex() for d in self.dependencies],
            "chain_name": self.chain_name,
        }

    @classmethod
    def from_json(cls, obj: Any) -> "DeployHeader":
        if not isinstance(obj, dict):
            raise DeployFormatError("header must be an object")
        try:
            return cls(
                account=PublicKey.from_hex(obj["account"], field="header.account"),
                timestamp=parse_timestamp(obj["timestamp"]),
                ttl=parse_ttl(obj["ttl"]),
                gas_price=int(obj["gas_price"]),
                body_hash=bytes.fromhex(obj["body_hash"]),
                chain_name=obj["chain_name"],
                dependencies=tuple(bytes.fromhex(d) for d in obj.get("dependencies", [])),
            )
        except KeyError as e:
            raise DeployFormatError(f"header is missing field {e.args[0]!r}") from None
        except DeployFormatError:
            raise
        except (TypeError, ValueError) as e:
            raise DeployFormatError(f"Malformed header: {e}") from None


@dataclass(frozen=True)
class Approval:
    """A signer and its signature (algorithm tag byte + 64 bytes) over the deploy hash."""
    signer: PublicKey
    signature: bytes

    def to_json(self) -> dict:
        return {"signer": self.signer.hex, "signature": self.signature.hex()}

    @classmethod
    def from_json(cls, obj: Any) -> "Approval":
        try:
            return cls(
                signer=PublicKey.from_hex(obj["signer"], field="approval.signer"),
                signature=bytes.fromhex(obj["signature"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, DeployFormatError):
                raise
            raise DeployFormatError(f"Malformed approval {obj!r}") from None

    def verify(self, deploy_hash: bytes) -> bool:
        """Check the signature over deploy_hash."""
        algorithm = self.signer.algorithm
        if len(self.signature) != 1 + algorithm.signature_length or self.signature[0] != algorithm:
            return False
        sig = self.signature[1:]
        if algorithm is KeyAlgorithm.ED25519:
            try:
                VerifyKey(self.signer.raw).verify(deploy_hash, sig)
            except BadSignatureError:
                return False
            return True
        try:
            pub_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), self.signer.raw)
            der = encode_dss_signature(int.from_bytes(sig[:32], "big"), int.from_bytes(sig[32:], "big"))
            pub_key.verify(der, deploy_hash, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        except ValueError:
            return False
        return True


@dataclass(frozen=True)
class Deploy:
    """An unsigned (no approvals) or signed deploy."""
    hash: bytes
    header: DeployHeader
    payment: ExecutableItem
    session: ExecutableItem
    approvals: Tuple[Approval, ...] = field(default=())

    @property
    def hash_hex(self) -> str:
        return self.hash.hex()

    @property
    def is_signed(self) -> bool:
        return bool(self.approvals)

    def body_bytes(self) -> bytes:
        return self.payment.to_bytes() + self.session.to_bytes()

    def validate(self) -> None:
        """Raise DeployFormatError if the hashes do not match the content."""
        body_hash = blake2b256(self.body_bytes())
        if body_hash != self.header.body_hash:
            raise DeployFormatError(
                "Deploy body hash does not match payment and session",
                details={"expected": body_hash.hex(), "actual": self.header.body_hash.hex()},
            )
        header_hash = self.header.hash()
        if header_hash != self.hash:
            raise DeployFormatError(
                "Deploy hash does not match header",
                details={"expected": header_hash.hex(), "actual": self.hash.hex()},
            )

    def with_approval(self, signer: PublicKey, signature: bytes) -> "Deploy":
        """Return a copy with one more approval; the hash is unchanged."""
        return replace(self, approvals=self.approvals + (Approval(signer, signature),))

    def invalid_approvals(self) -> List[Approval]:
        return [a for a in self.approvals if not a.verify(self.hash)]

    def verify_approvals(self) -> bool:
        return self.is_signed and not self.invalid_approvals()

    def to_bytes(self) -> bytes:
        """Canonical binary form of the unsigned content plus approvals."""
        out = self.header.to_bytes() + self.hash + self.body_bytes()
        out += encode_u32(len(self.approvals))
        for approval in self.approvals:
            out += approval.signer.to_bytes() + approval.signature
        return out

    @classmethod
    def from_bytes(cls, data: bytes) -> "Deploy":
        header, offset = DeployHeader.from_bytes(data, 0)
        deploy_hash, offset = _decode_hash(data, offset)
        payment, offset = executable_from_bytes(data, offset)
        session, offset = executable_from_bytes(data, offset)
        count, offset = decode_u32(data, offset)
        approvals = []
        for _ in range(count):
            signer, offset = _decode_public_key(data, offset)
            signature, offset = _decode_signature(data, offset)
            approvals.append(Approval(signer, signature))
        if offset != len(data):
            raise DeployFormatError(f"Trailing bytes after deploy: {len(data) - offset}")
        deploy = cls(
            hash=deploy_hash,
            header=header,
            payment=payment,
            session=session,
            approvals=tuple(approvals),
        )
        deploy.validate()
        return deploy

    def to_json(self) -> dict:
        return {
            "deploy": {
                "hash": self.hash_hex,
                "header": self.header.to_json(),
                "payment": self.payment.to_json(),
                "session": self.session.to_json(),
                "approvals": [a.to_json() for a in self.approvals],
            }
        }

    def to_json_string(self) -> str:
        return json.dumps(self.to_json())

    @classmethod
    def from_json(cls, obj: Union[str, Mapping[str, Any]]) -> "Deploy":
        """Parse wrapped ({"deploy": {...}}) or bare deploy JSON and validate hashes."""
        if isinstance(obj, (str, bytes)):
            try:
                obj = json.loads(obj)
            except ValueError as e:
                raise DeployFormatError(f"Deploy is not valid JSON: {e}") from None
        if not isinstance(obj, Mapping):
            raise DeployFormatError("Deploy JSON must be an object")
        body = obj.get("deploy", obj)
        if not isinstance(body, Mapping):
            raise DeployFormatError("Deploy JSON must be an object")
        try:
            deploy = cls(
                hash=bytes.fromhex(body["hash"]),
                header=DeployHeader.from_json(body["header"]),
                payment=executable_from_json(body["payment"]),
                session=executable_from_json(body["session"]),
                approvals=tuple(Approval.from_json(a) for a in body.get("approvals") or []),
            )
        except KeyError as e:
            raise DeployFormatError(f"Deploy is missing field {e.args[0]!r}") from None
        except (TypeError, ValueError) as e:
            if isinstance(e, DeployFormatError):
                raise
            raise DeployFormatError(f"Malformed deploy: {e}") from None
        deploy.validate()
        return deploy


def make_deploy(
    account: PublicKey,
    chain_name: str,
    session: ExecutableItem,
    payment: ExecutableItem,
    ttl_ms: int,
    gas_price: int,
    timestamp_ms: int,
    dependencies: Iterable[bytes] = (),
) -> Deploy:
    """Assemble and hash an unsigned deploy."""
    body_hash = blake2b256(payment.to_bytes() + session.to_bytes())
    header = DeployHeader(
        account=account,
        timestamp=timestamp_ms,
        ttl=ttl_ms,
        gas_price=gas_price,
        body_hash=body_hash,
        chain_name=chain_name,
        dependencies=tuple(dependencies),
    )
    return Deploy(hash=header.hash(), header=header, payment=payment, session=session)


def session_args(deploy: Deploy) -> Dict[str, Any]:
    """Session argument values by name, for inspection and logging."""
    return {name: value.value for name, value in deploy.session.args.items}
