"""Self-describing typed values (CLValue) and their binary/JSON codecs.

Binary layout of a CLValue:

    u32 length | value bytes | type bytes

Integers are little-endian. U128/U256/U512 use a one-byte length prefix
followed by the minimal little-endian magnitude (zero is a single 0x00).
Strings and vectors carry a u32 length/count prefix.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, List, Optional, Tuple

from .exceptions import DeployFormatError, InvalidArgumentError
from .keys import ACCOUNT_HASH_PREFIX, AccountHash, PublicKey


# =============================================================================
# Primitive encoders
# =============================================================================

def encode_u8(value: int) -> bytes:
    return struct.pack("<B", value)


def encode_u32(value: int) -> bytes:
    return struct.pack("<I", value)


def encode_u64(value: int) -> bytes:
    return struct.pack("<Q", value)


def encode_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return encode_u32(len(raw)) + raw


def encode_bytes_vec(value: bytes) -> bytes:
    return encode_u32(len(value)) + value


def encode_big_uint(value: int, max_bits: int) -> bytes:
    if value < 0 or value.bit_length() > max_bits:
        raise InvalidArgumentError(
            f"Value {value} does not fit in U{max_bits}", reason=InvalidArgumentError.INVALID_VALUE
        )
    if value == 0:
        return b"\x00"
    magnitude = value.to_bytes((value.bit_length() + 7) // 8, "little")
    return bytes([len(magnitude)]) + magnitude


# =============================================================================
# Primitive decoders: (data, offset) -> (value, new_offset)
# =============================================================================

def _take(data: bytes, offset: int, length: int) -> Tuple[bytes, int]:
    end = offset + length
    if length < 0 or end > len(data):
        raise DeployFormatError(
            f"Unexpected end of data: need {length} bytes at offset {offset}, have {len(data) - offset}"
        )
    return data[offset:end], end


def decode_u8(data: bytes, offset: int) -> Tuple[int, int]:
    raw, offset = _take(data, offset, 1)
    return raw[0], offset


def decode_u32(data: bytes, offset: int) -> Tuple[int, int]:
    raw, offset = _take(data, offset, 4)
    return struct.unpack("<I", raw)[0], offset


def decode_u64(data: bytes, offset: int) -> Tuple[int, int]:
    raw, offset = _take(data, offset, 8)
    return struct.unpack("<Q", raw)[0], offset


def decode_string(data: bytes, offset: int) -> Tuple[str, int]:
    length, offset = decode_u32(data, offset)
    raw, offset = _take(data, offset, length)
    try:
        return raw.decode("utf-8"), offset
    except UnicodeDecodeError:
        raise DeployFormatError("String is not valid UTF-8") from None


def decode_bytes_vec(data: bytes, offset: int) -> Tuple[bytes, int]:
    length, offset = decode_u32(data, offset)
    return _take(data, offset, length)


def decode_big_uint(data: bytes, offset: int, max_bits: int) -> Tuple[int, int]:
    length, offset = decode_u8(data, offset)
    if length * 8 > max_bits:
        raise DeployFormatError(f"U{max_bits} length prefix too large: {length}")
    raw, offset = _take(data, offset, length)
    return int.from_bytes(raw, "little"), offset


# =============================================================================
# Types
# =============================================================================

class CLTypeTag(IntEnum):
    BOOL = 0
    I32 = 1
    I64 = 2
    U8 = 3
    U32 = 4
    U64 = 5
    U128 = 6
    U256 = 7
    U512 = 8
    UNIT = 9
    STRING = 10
    KEY = 11
    UREF = 12
    OPTION = 13
    LIST = 14
    BYTE_ARRAY = 15
    RESULT = 16
    MAP = 17
    TUPLE1 = 18
    TUPLE2 = 19
    TUPLE3 = 20
    ANY = 21
    PUBLIC_KEY = 22


_SIMPLE_NAMES = {
    CLTypeTag.BOOL: "Bool",
    CLTypeTag.I32: "I32",
    CLTypeTag.I64: "I64",
    CLTypeTag.U8: "U8",
    CLTypeTag.U32: "U32",
    CLTypeTag.U64: "U64",
    CLTypeTag.U128: "U128",
    CLTypeTag.U256: "U256",
    CLTypeTag.U512: "U512",
    CLTypeTag.UNIT: "Unit",
    CLTypeTag.STRING: "String",
    CLTypeTag.KEY: "Key",
    CLTypeTag.UREF: "URef",
    CLTypeTag.ANY: "Any",
    CLTypeTag.PUBLIC_KEY: "PublicKey",
}
_SIMPLE_BY_NAME = {name: tag for tag, name in _SIMPLE_NAMES.items()}

_BIG_UINT_BITS = {CLTypeTag.U128: 128, CLTypeTag.U256: 256, CLTypeTag.U512: 512}


@dataclass(frozen=True)
class CLType:
    """A CLValue type; `inner` for Option/List, `size` for ByteArray."""
    tag: CLTypeTag
    inner: Optional["CLType"] = None
    size: Optional[int] = None

    def to_bytes(self) -> bytes:
        out = encode_u8(self.tag)
        if self.tag in (CLTypeTag.OPTION, CLTypeTag.LIST):
            out += self.inner.to_bytes()
        elif self.tag is CLTypeTag.BYTE_ARRAY:
            out += encode_u32(self.size)
        return out

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> Tuple["CLType", int]:
        raw_tag, offset = decode_u8(data, offset)
        try:
            tag = CLTypeTag(raw_tag)
        except ValueError:
            raise DeployFormatError(f"Unknown CLType tag {raw_tag}") from None
        if tag in (CLTypeTag.OPTION, CLTypeTag.LIST):
            inner, offset = cls.from_bytes(data, offset)
            return cls(tag, inner=inner), offset
        if tag is CLTypeTag.BYTE_ARRAY:
            size, offset = decode_u32(data, offset)
            return cls(tag, size=size), offset
        if tag in _SIMPLE_NAMES:
            return cls(tag), offset
        raise DeployFormatError(f"Unsupported CLType {tag.name}")

    def to_json(self) -> Any:
        if self.tag is CLTypeTag.LIST:
            return {"List": self.inner.to_json()}
        if self.tag is CLTypeTag.OPTION:
            return {"Option": self.inner.to_json()}
        if self.tag is CLTypeTag.BYTE_ARRAY:
            return {"ByteArray": self.size}
        return _SIMPLE_NAMES[self.tag]

    @classmethod
    def from_json(cls, obj: Any) -> "CLType":
        if isinstance(obj, str):
            if obj not in _SIMPLE_BY_NAME:
                raise DeployFormatError(f"Unsupported cl_type {obj!r}")
            return cls(_SIMPLE_BY_NAME[obj])
        if isinstance(obj, dict) and len(obj) == 1:
            (name, value), = obj.items()
            if name == "List":
                return cls(CLTypeTag.LIST, inner=cls.from_json(value))
            if name == "Option":
                return cls(CLTypeTag.OPTION, inner=cls.from_json(value))
            if name == "ByteArray" and isinstance(value, int):
                return cls(CLTypeTag.BYTE_ARRAY, size=value)
        raise DeployFormatError(f"Unsupported cl_type {obj!r}")


CL_BOOL = CLType(CLTypeTag.BOOL)
CL_U8 = CLType(CLTypeTag.U8)
CL_U32 = CLType(CLTypeTag.U32)
CL_U64 = CLType(CLTypeTag.U64)
CL_U256 = CLType(CLTypeTag.U256)
CL_U512 = CLType(CLTypeTag.U512)
CL_STRING = CLType(CLTypeTag.STRING)
CL_KEY = CLType(CLTypeTag.KEY)
CL_PUBLIC_KEY = CLType(CLTypeTag.PUBLIC_KEY)
CL_UNIT = CLType(CLTypeTag.UNIT)
CL_ACCOUNT_HASH = CLType(CLTypeTag.BYTE_ARRAY, size=32)


def list_of(inner: CLType) -> CLType:
    return CLType(CLTypeTag.LIST, inner=inner)


def option_of(inner: CLType) -> CLType:
    return CLType(CLTypeTag.OPTION, inner=inner)


def byte_array(size: int) -> CLType:
    return CLType(CLTypeTag.BYTE_ARRAY, size=size)


# =============================================================================
# Key / URef values
# =============================================================================

class KeyKind(IntEnum):
    ACCOUNT = 0
    HASH = 1
    UREF = 2


@dataclass(frozen=True)
class URef:
    address: bytes
    access_rights: int = 7

    def to_bytes(self) -> bytes:
        return self.address + encode_u8(self.access_rights)

    def formatted(self) -> str:
        return f"uref-{self.address.hex()}-{self.access_rights:03o}"


@dataclass(frozen=True)
class Key:
    """Global state key (account, hash or uref)."""
    kind: KeyKind
    data: bytes

    @classmethod
    def account(cls, account_hash: AccountHash) -> "Key":
        return cls(KeyKind.ACCOUNT, account_hash.value)

    @classmethod
    def hash(cls, value: bytes) -> "Key":
        return cls(KeyKind.HASH, value)

    def to_bytes(self) -> bytes:
        return encode_u8(self.kind) + self.data

    def formatted(self) -> str:
        if self.kind is KeyKind.ACCOUNT:
            return f"{ACCOUNT_HASH_PREFIX}{self.data.hex()}"
        if self.kind is KeyKind.HASH:
            return f"hash-{self.data.hex()}"
        return URef(self.data[:32], self.data[32]).formatted()

    def to_json(self) -> dict:
        label = {KeyKind.ACCOUNT: "Account", KeyKind.HASH: "Hash", KeyKind.UREF: "URef"}[self.kind]
        return {label: self.formatted()}


def _decode_key(data: bytes, offset: int) -> Tuple[Key, int]:
    raw_kind, offset = decode_u8(data, offset)
    try:
        kind = KeyKind(raw_kind)
    except ValueError:
        raise DeployFormatError(f"Unsupported key tag {raw_kind}") from None
    length = 33 if kind is KeyKind.UREF else 32
    raw, offset = _take(data, offset, length)
    return Key(kind, raw), offset


# =============================================================================
# Value codec
# =============================================================================

_FIXED_INTS = {
    CLTypeTag.I32: ("<i", 4),
    CLTypeTag.I64: ("<q", 8),
    CLTypeTag.U8: ("<B", 1),
    CLTypeTag.U32: ("<I", 4),
    CLTypeTag.U64: ("<Q", 8),
}


def encode_value(cl_type: CLType, value: Any) -> bytes:
    """Serialize a Python value according to its CLType."""
    tag = cl_type.tag
    try:
        if tag is CLTypeTag.BOOL:
            if not isinstance(value, bool):
                raise TypeError("expected bool")
            return b"\x01" if value else b"\x00"
        if tag in _FIXED_INTS:
            fmt, _ = _FIXED_INTS[tag]
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError("expected int")
            return struct.pack(fmt, value)
        if tag in _BIG_UINT_BITS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError("expected int")
            return encode_big_uint(value, _BIG_UINT_BITS[tag])
        if tag is CLTypeTag.UNIT:
            return b""
        if tag is CLTypeTag.STRING:
            return encode_string(value)
        if tag is CLTypeTag.KEY:
            return value.to_bytes()
        if tag is CLTypeTag.UREF:
            return value.to_bytes()
        if tag is CLTypeTag.PUBLIC_KEY:
            return value.to_bytes()
        if tag is CLTypeTag.OPTION:
            if value is None:
                return b"\x00"
            return b"\x01" + encode_value(cl_type.inner, value)
        if tag is CLTypeTag.LIST:
            items = list(value)
            return encode_u32(len(items)) + b"".join(encode_value(cl_type.inner, v) for v in items)
        if tag is CLTypeTag.BYTE_ARRAY:
            raw = bytes(value)
            if len(raw) != cl_type.size:
                raise ValueError(f"expected {cl_type.size} bytes, got {len(raw)}")
            return raw
    except (TypeError, ValueError, struct.error, AttributeError) as e:
        raise InvalidArgumentError(
            f"Cannot encode {value!r} as {cl_type.to_json()}: {e}",
            reason=InvalidArgumentError.INVALID_VALUE,
        ) from None
    raise InvalidArgumentError(f"Unsupported CLType {tag.name}", reason=InvalidArgumentError.INVALID_VALUE)


def decode_value(cl_type: CLType, data: bytes, offset: int = 0) -> Tuple[Any, int]:
    """Deserialize a value of the given CLType starting at offset."""
    tag = cl_type.tag
    if tag is CLTypeTag.BOOL:
        raw, offset = decode_u8(data, offset)
        if raw not in (0, 1):
            raise DeployFormatError(f"Invalid bool byte {raw}")
        return raw == 1, offset
    if tag in _FIXED_INTS:
        fmt, size = _FIXED_INTS[tag]
        raw, offset = _take(data, offset, size)
        return struct.unpack(fmt, raw)[0], offset
    if tag in _BIG_UINT_BITS:
        return decode_big_uint(data, offset, _BIG_UINT_BITS[tag])
    if tag is CLTypeTag.UNIT:
        return None, offset
    if tag is CLTypeTag.STRING:
        return decode_string(data, offset)
    if tag is CLTypeTag.KEY:
        return _decode_key(data, offset)
    if tag is CLTypeTag.UREF:
        raw, offset = _take(data, offset, 33)
        return URef(raw[:32], raw[32]), offset
    if tag is CLTypeTag.PUBLIC_KEY:
        raw_tag, _ = decode_u8(data, offset)
        length = 33 if raw_tag == 1 else 34
        raw, offset = _take(data, offset, length)
        try:
            return PublicKey.from_bytes(raw), offset
        except InvalidArgumentError as e:
            raise DeployFormatError(f"Invalid public key: {e.message}") from None
    if tag is CLTypeTag.OPTION:
        flag, offset = decode_u8(data, offset)
        if flag == 0:
            return None, offset
        return decode_value(cl_type.inner, data, offset)
    if tag is CLTypeTag.LIST:
        count, offset = decode_u32(data, offset)
        items = []
        for _ in range(count):
            item, offset = decode_value(cl_type.inner, data, offset)
            items.append(item)
        return items, offset
    if tag is CLTypeTag.BYTE_ARRAY:
        return _take(data, offset, cl_type.size)
    raise DeployFormatError(f"Unsupported CLType {tag.name}")


def parsed_json(cl_type: CLType, value: Any) -> Any:
    """Human-readable "parsed" rendering used in JSON documents."""
    tag = cl_type.tag
    if tag in _BIG_UINT_BITS:
        return str(value)
    if tag in (CLTypeTag.KEY,):
        return value.to_json()
    if tag is CLTypeTag.UREF:
        return value.formatted()
    if tag is CLTypeTag.PUBLIC_KEY:
        return value.hex
    if tag is CLTypeTag.BYTE_ARRAY:
        return bytes(value).hex()
    if tag is CLTypeTag.OPTION:
        return None if value is None else parsed_json(cl_type.inner, value)
    if tag is CLTypeTag.LIST:
        return [parsed_json(cl_type.inner, v) for v in value]
    return value


@dataclass(frozen=True)
class CLValue:
    """A typed value as carried in runtime args and global state."""
    cl_type: CLType
    value: Any

    # Constructors

    @classmethod
    def bool(cls, value: bool) -> "CLValue":
        return cls(CL_BOOL, value)

    @classmethod
    def u8(cls, value: int) -> "CLValue":
        return cls(CL_U8, value)

    @classmethod
    def u32(cls, value: int) -> "CLValue":
        return cls(CL_U32, value)

    @classmethod
    def u64(cls, value: int) -> "CLValue":
        return cls(CL_U64, value)

    @classmethod
    def u256(cls, value: int) -> "CLValue":
        return cls(CL_U256, value)

    @classmethod
    def u512(cls, value: int) -> "CLValue":
        return cls(CL_U512, value)

    @classmethod
    def string(cls, value: str) -> "CLValue":
        return cls(CL_STRING, value)

    @classmethod
    def public_key(cls, value: PublicKey) -> "CLValue":
        return cls(CL_PUBLIC_KEY, value)

    @classmethod
    def account_hash(cls, value: AccountHash) -> "CLValue":
        return cls(CL_ACCOUNT_HASH, value.value)

    @classmethod
    def account_hash_list(cls, values: List[AccountHash]) -> "CLValue":
        return cls(list_of(CL_ACCOUNT_HASH), [v.value for v in values])

    @classmethod
    def account_key(cls, value: AccountHash) -> "CLValue":
        return cls(CL_KEY, Key.account(value))

    # Serialization

    def serialized_value(self) -> bytes:
        return encode_value(self.cl_type, self.value)

    def to_bytes(self) -> bytes:
        payload = self.serialized_value()
        return encode_u32(len(payload)) + payload + self.cl_type.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> Tuple["CLValue", int]:
        payload, offset = decode_bytes_vec(data, offset)
        cl_type, offset = CLType.from_bytes(data, offset)
        return cls.from_serialized(cl_type, payload), offset

    @classmethod
    def from_serialized(cls, cl_type: CLType, payload: bytes) -> "CLValue":
        value, consumed = decode_value(cl_type, payload, 0)
        if consumed != len(payload):
            raise DeployFormatError(
                f"Trailing bytes after {cl_type.to_json()} value: {len(payload) - consumed}"
            )
        return cls(cl_type, value)

    def to_json(self) -> dict:
        return {
            "cl_type": self.cl_type.to_json(),
            "bytes": self.serialized_value().hex(),
            "parsed": parsed_json(self.cl_type, self.value),
        }

    @classmethod
    def from_json(cls, obj: Any) -> "CLValue":
        if not isinstance(obj, dict) or "cl_type" not in obj or "bytes" not in obj:
            raise DeployFormatError("CLValue JSON must have cl_type and bytes")
        cl_type = CLType.from_json(obj["cl_type"])
        try:
            payload = bytes.fromhex(obj["bytes"])
        except (TypeError, ValueError):
            raise DeployFormatError("CLValue bytes are not valid hex") from None
        return cls.from_serialized(cl_type, payload)
