# =============================================================================
# Blob packing: UnixFS file DAG with raw leaves, shipped as a CARv1
# =============================================================================
"""
Blobs (ciphertexts, published descriptions) are uploaded the way an IPFS CAR
packer imports a file:

  - fixed-size chunks of 256 KiB, each stored as a raw block (CIDv1, raw)
  - a blob that fits in one chunk is its own root (the single raw leaf)
  - otherwise leaves are linked from dag-pb UnixFS file nodes, at most 174
    links per node, layered until a single root remains (balanced layout)
  - the blocks are written to a CARv1 whose header names that root

The root CID is computed locally and is the blob's identifier; the upload
endpoint's reply is not needed to know it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from zksig.cid.addresser import (
    CODEC_DAG_PB,
    CODEC_RAW,
    HASH_SHA2_256,
    ContentIdentifier,
    _pb_bytes,
    _pb_varint,
    _sha256,
    _UNIXFS_FILE,
    encode_varint,
)
from zksig.errors import InvalidInput

CHUNK_SIZE = 262144
MAX_CHILDREN = 174

CAR_VERSION = 1

# dag-cbor major types
_CBOR_BYTES = 2
_CBOR_TEXT = 3
_CBOR_ARRAY = 4
_CBOR_MAP = 5
_CBOR_TAG_CID = 42


@dataclass(frozen=True)
class Block:
    cid: ContentIdentifier
    data: bytes


@dataclass(frozen=True)
class _Node:
    block: Block
    tsize: int      # block length plus everything linked below it
    filesize: int   # file bytes covered


# =============================================================================
# File DAG
# =============================================================================

def _leaf(chunk: bytes) -> _Node:
    cid = ContentIdentifier(1, CODEC_RAW, HASH_SHA2_256, _sha256(chunk))
    return _Node(Block(cid, chunk), len(chunk), len(chunk))


def _pb_link(child: _Node) -> bytes:
    # PBLink{Hash, Name="", Tsize}
    return (
        _pb_bytes(1, child.block.cid.to_bytes())
        + _pb_bytes(2, b"")
        + _pb_varint(3, child.tsize)
    )


def _parent(children: list[_Node]) -> _Node:
    filesize = sum(c.filesize for c in children)
    unixfs = _pb_varint(1, _UNIXFS_FILE) + _pb_varint(3, filesize)
    for c in children:
        unixfs += _pb_varint(4, c.filesize)

    # dag-pb canonical order: Links (2) before Data (1)
    data = b"".join(_pb_bytes(2, _pb_link(c)) for c in children) + _pb_bytes(1, unixfs)
    cid = ContentIdentifier(1, CODEC_DAG_PB, HASH_SHA2_256, _sha256(data))
    return _Node(Block(cid, data), len(data) + sum(c.tsize for c in children), filesize)


def build_file_dag(data: bytes) -> Tuple[ContentIdentifier, list[Block]]:
    """
    Import a blob. Returns (root, blocks), blocks leaves first and root last.
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidInput("blob must be bytes")
    data = bytes(data)

    level = [_leaf(data[i:i + CHUNK_SIZE]) for i in range(0, len(data), CHUNK_SIZE)]
    if not level:
        level = [_leaf(b"")]
    blocks = [n.block for n in level]

    while len(level) > 1:
        level = [_parent(level[i:i + MAX_CHILDREN]) for i in range(0, len(level), MAX_CHILDREN)]
        blocks.extend(n.block for n in level)

    return level[0].block.cid, blocks


def identify_blob(data: bytes) -> ContentIdentifier:
    """Root CID a blob is stored under once packed."""
    root, _ = build_file_dag(data)
    return root


# =============================================================================
# CARv1
# =============================================================================

def _cbor_head(major: int, n: int) -> bytes:
    if n < 24:
        return bytes([(major << 5) | n])
    if n < 0x100:
        return bytes([(major << 5) | 24, n])
    if n < 0x10000:
        return bytes([(major << 5) | 25]) + n.to_bytes(2, "big")
    return bytes([(major << 5) | 26]) + n.to_bytes(4, "big")


def _cbor_text(s: str) -> bytes:
    raw = s.encode("utf-8")
    return _cbor_head(_CBOR_TEXT, len(raw)) + raw


def _cbor_cid(cid: ContentIdentifier) -> bytes:
    # tag 42 over the identity-multibase (0x00) prefixed binary CID
    raw = b"\x00" + cid.to_bytes()
    return (
        bytes([0xD8, _CBOR_TAG_CID])
        + _cbor_head(_CBOR_BYTES, len(raw))
        + raw
    )


def car_header(roots: Iterable[ContentIdentifier]) -> bytes:
    """dag-cbor {"roots": [...], "version": 1}, keys in canonical order."""
    roots = list(roots)
    return (
        _cbor_head(_CBOR_MAP, 2)
        + _cbor_text("roots")
        + _cbor_head(_CBOR_ARRAY, len(roots))
        + b"".join(_cbor_cid(r) for r in roots)
        + _cbor_text("version")
        + _cbor_head(0, CAR_VERSION)
    )


def encode_car(root: ContentIdentifier, blocks: Iterable[Block]) -> bytes:
    header = car_header([root])
    out = bytearray(encode_varint(len(header)) + header)
    for b in blocks:
        cid_bytes = b.cid.to_bytes()
        out += encode_varint(len(cid_bytes) + len(b.data))
        out += cid_bytes
        out += b.data
    return bytes(out)


def pack_car(data: bytes) -> Tuple[ContentIdentifier, bytes]:
    """(root, CARv1 bytes) for a blob."""
    root, blocks = build_file_dag(data)
    return root, encode_car(root, blocks)
