import hashlib

import pytest

from zksig.cid import CODEC_DAG_PB, CODEC_RAW, build_file_dag, identify_blob, identify_raw, pack_car
from zksig.cid import car as car_module
from zksig.errors import InvalidInput


# -----------------------------------------------------------------------------
# File DAG
# -----------------------------------------------------------------------------

def test_single_chunk_blob_is_its_own_raw_root():
    root, blocks = build_file_dag(b"hello")
    assert root == identify_raw(b"hello")
    assert root.codec == CODEC_RAW
    assert str(root).startswith("bafkrei")
    assert [(b.cid, b.data) for b in blocks] == [(root, b"hello")]


def test_empty_blob_has_a_root():
    assert identify_blob(b"") == identify_raw(b"")


def test_two_chunks_are_linked_from_a_file_node():
    size = car_module.CHUNK_SIZE
    data = b"a" * size + b"b" * 10
    root, blocks = build_file_dag(data)

    first, second = identify_raw(b"a" * size), identify_raw(b"b" * 10)
    assert [b.cid for b in blocks] == [first, second, root]
    assert root.codec == CODEC_DAG_PB and root.version == 1

    node = blocks[-1].data
    expected = (
        # Links: PBLink{Hash, Name="", Tsize}
        b"\x12\x2c" + b"\x0a\x24" + first.to_bytes() + b"\x12\x00" + b"\x18\x80\x80\x10"
        + b"\x12\x2a" + b"\x0a\x24" + second.to_bytes() + b"\x12\x00" + b"\x18\x0a"
        # Data: UnixFS{Type=File, filesize=262154, blocksizes=[262144, 10]}
        + b"\x0a\x0c" + b"\x08\x02" + b"\x18\x8a\x80\x10" + b"\x20\x80\x80\x10" + b"\x20\x0a"
    )
    assert node == expected
    assert root.digest == hashlib.sha256(expected).digest()


def test_wide_files_get_another_layer(monkeypatch):
    monkeypatch.setattr(car_module, "CHUNK_SIZE", 1)
    root, blocks = build_file_dag(bytes(range(175)))

    # 175 leaves, two parents (174 + 1 links), one root
    assert len(blocks) == 178
    assert blocks[-1].cid == root
    # root UnixFS: filesize=175, blocksizes=[174, 1]
    assert blocks[-1].data.endswith(b"\x0a\x0a\x08\x02\x18\xaf\x01\x20\xae\x01\x20\x01")


def test_dag_rejects_non_bytes():
    with pytest.raises(InvalidInput):
        build_file_dag("text")  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# CARv1
# -----------------------------------------------------------------------------

def test_car_layout_for_single_block():
    root, car = pack_car(b"hello")
    cid_bytes = root.to_bytes()
    assert len(cid_bytes) == 36

    header = (
        b"\xa2"
        + b"\x65roots" + b"\x81" + b"\xd8\x2a" + b"\x58\x25" + b"\x00" + cid_bytes
        + b"\x67version" + b"\x01"
    )
    assert len(header) == 58
    assert car == b"\x3a" + header + b"\x29" + cid_bytes + b"hello"


def test_car_carries_every_block():
    data = b"z" * (car_module.CHUNK_SIZE + 1)
    root, car = pack_car(data)
    _, blocks = build_file_dag(data)
    for b in blocks:
        assert b.cid.to_bytes() + b.data in car
    assert root == blocks[-1].cid
