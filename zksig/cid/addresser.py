# =============================================================================
# Content identifiers for agreement documents (UnixFS file node in dag-pb)
# =============================================================================
"""
A document is identified exactly the way an IPFS importer identifies a file that
fits in a single block:

  1) wrap the bytes in a UnixFS Data message {Type=File, Data=bytes, filesize=len}
  2) put that message in the Data field of a dag-pb PBNode with no links
  3) sha2-256 the encoded node
  4) CID(codec=dag-pb, multihash=sha2-256), normalized to version 1

The canonical string form is CIDv1 in multibase base32 ("bafy...").
A CIDv0 string ("Qm...") for the same digest normalizes to the same value.

The identifier depends on the bytes alone (no keys, no randomness, no clock).
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Tuple, Union

from cryptography.hazmat.primitives import hashes

from zksig.errors import InvalidInput

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

CODEC_DAG_PB = 0x70
CODEC_RAW = 0x55
HASH_SHA2_256 = 0x12
SHA2_256_LEN = 32

# UnixFS Data.DataType
_UNIXFS_FILE = 2

# protobuf wire types
_WT_VARINT = 0
_WT_LEN = 2

_B32_PREFIX = "b"
_B32_UPPER_PREFIX = "B"
_B58_PREFIX = "z"


# =============================================================================
# Base58btc (bitcoin alphabet, no external deps)
# =============================================================================

B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise InvalidInput("invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = 0
    for c in s_bytes:
        if c == B58_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = 0
    for c in b:
        if c == 0:
            n_pad += 1
        else:
            break
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0:1] * n_pad)
    out.reverse()
    return out.decode("ascii")


def _b32encode(b: bytes) -> str:
    # RFC 4648 lowercase, unpadded (multibase "b")
    return base64.b32encode(b).decode("ascii").lower().rstrip("=")


def _b32decode(s: str) -> bytes:
    s = s.upper()
    s += "=" * (-len(s) % 8)
    try:
        return base64.b32decode(s)
    except (ValueError, TypeError) as e:
        raise InvalidInput("invalid base32 content identifier") from e


# =============================================================================
# Varints and protobuf fields
# =============================================================================

def encode_varint(n: int) -> bytes:
    if n < 0:
        raise InvalidInput("varint must be non-negative")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def decode_varint(buf: bytes, pos: int = 0) -> Tuple[int, int]:
    """Return (value, next_position)."""
    shift = 0
    value = 0
    while True:
        if pos >= len(buf):
            raise InvalidInput("truncated varint")
        b = buf[pos]
        pos += 1
        value |= (b & 0x7F) << shift
        if not b & 0x80:
            return value, pos
        shift += 7
        if shift > 63:
            raise InvalidInput("varint too long")


def _key(field_no: int, wire_type: int) -> bytes:
    return encode_varint((field_no << 3) | wire_type)


def _pb_varint(field_no: int, value: int) -> bytes:
    return _key(field_no, _WT_VARINT) + encode_varint(value)


def _pb_bytes(field_no: int, value: bytes) -> bytes:
    return _key(field_no, _WT_LEN) + encode_varint(len(value)) + value


def unixfs_file_data(data: bytes) -> bytes:
    """
    Marshal a UnixFS Data message for a single-block file.

    Field order is the protobuf field order: Type(1), Data(2), filesize(3).
    Data is omitted for an empty file, filesize is always present.
    """
    out = _pb_varint(1, _UNIXFS_FILE)
    if data:
        out += _pb_bytes(2, data)
    out += _pb_varint(3, len(data))
    return out


def dag_pb_node(data: bytes) -> bytes:
    # PBNode with no Links: only the Data field (1) remains.
    return _pb_bytes(1, data)


def _sha256(data: bytes) -> bytes:
    h = hashes.Hash(hashes.SHA256())
    h.update(data)
    return h.finalize()


# =============================================================================
# ContentIdentifier
# =============================================================================

@dataclass(frozen=True, eq=False)
class ContentIdentifier:
    """
    A CID. Equality and hashing use the version-normalized form, so a CIDv0 and
    the CIDv1 for the same dag-pb/sha2-256 digest compare equal.
    """
    version: int
    codec: int
    hash_code: int
    digest: bytes

    def __post_init__(self):
        if self.version not in (0, 1):
            raise InvalidInput(f"unsupported CID version {self.version}")
        if self.version == 0 and (self.codec != CODEC_DAG_PB or self.hash_code != HASH_SHA2_256):
            raise InvalidInput("CIDv0 requires dag-pb and sha2-256")
        if self.hash_code == HASH_SHA2_256 and len(self.digest) != SHA2_256_LEN:
            raise InvalidInput("sha2-256 digest must be 32 bytes")

    @property
    def multihash(self) -> bytes:
        return encode_varint(self.hash_code) + encode_varint(len(self.digest)) + self.digest

    def to_v1(self) -> "ContentIdentifier":
        if self.version == 1:
            return self
        return ContentIdentifier(1, self.codec, self.hash_code, self.digest)

    def to_v0(self) -> "ContentIdentifier":
        if self.version == 0:
            return self
        return ContentIdentifier(0, self.codec, self.hash_code, self.digest)

    def to_bytes(self) -> bytes:
        if self.version == 0:
            return self.multihash
        return encode_varint(1) + encode_varint(self.codec) + self.multihash

    def encode(self) -> str:
        """String form in this CID's own version (v0 base58btc, v1 base32)."""
        if self.version == 0:
            return b58encode(self.multihash)
        return _B32_PREFIX + _b32encode(self.to_bytes())

    def __str__(self) -> str:
        return self.to_v1().encode()

    def __repr__(self) -> str:
        return f"ContentIdentifier({self.encode()!r})"

    def _norm(self) -> Tuple[int, int, bytes]:
        return (self.codec, self.hash_code, self.digest)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContentIdentifier):
            return NotImplemented
        return self._norm() == other._norm()

    def __hash__(self) -> int:
        return hash(self._norm())

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ContentIdentifier":
        if len(raw) == 34 and raw[0] == HASH_SHA2_256 and raw[1] == SHA2_256_LEN:
            return cls(0, CODEC_DAG_PB, HASH_SHA2_256, bytes(raw[2:]))

        version, pos = decode_varint(raw, 0)
        if version != 1:
            raise InvalidInput(f"unsupported CID version {version}")
        codec, pos = decode_varint(raw, pos)
        hash_code, pos = decode_varint(raw, pos)
        length, pos = decode_varint(raw, pos)
        digest = bytes(raw[pos:])
        if len(digest) != length:
            raise InvalidInput("multihash length mismatch")
        return cls(1, codec, hash_code, digest)

    @classmethod
    def parse(cls, text: str) -> "ContentIdentifier":
        """Parse a CIDv0 ("Qm...") or a multibase CIDv1 ("b..." / "B..." / "z...")."""
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("content identifier must be a non-empty string")
        s = text.strip()

        if len(s) == 46 and s.startswith("Qm"):
            raw = b58decode(s)
            if len(raw) != 34:
                raise InvalidInput("invalid CIDv0")
            return cls.from_bytes(raw)

        prefix, body = s[0], s[1:]
        if prefix in (_B32_PREFIX, _B32_UPPER_PREFIX):
            return cls.from_bytes(_b32decode(body))
        if prefix == _B58_PREFIX:
            return cls.from_bytes(b58decode(body))
        raise InvalidInput(f"unsupported multibase prefix {prefix!r}")


# =============================================================================
# Public API
# =============================================================================

def encode_file_node(data: bytes) -> bytes:
    """The dag-pb block bytes a single-block UnixFS file is stored as."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidInput("document must be bytes")
    return dag_pb_node(unixfs_file_data(bytes(data)))


def identify(data: bytes) -> ContentIdentifier:
    """Canonical (CIDv1, dag-pb, sha2-256) identifier of a document."""
    block = encode_file_node(data)
    cid = ContentIdentifier(0, CODEC_DAG_PB, HASH_SHA2_256, _sha256(block)).to_v1()
    logger.debug("identified %d bytes as %s", len(data), cid)
    return cid


def identify_raw(data: bytes) -> ContentIdentifier:
    """CIDv1 of a raw-leaf block, as a store assigns to a single-block upload."""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidInput("blob must be bytes")
    return ContentIdentifier(1, CODEC_RAW, HASH_SHA2_256, _sha256(bytes(data)))


def normalize(cid: Union[str, ContentIdentifier]) -> str:
    """Canonical string form of any accepted identifier."""
    if isinstance(cid, ContentIdentifier):
        return str(cid)
    return str(ContentIdentifier.parse(cid))
