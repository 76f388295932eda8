import gzip
import io

import pytest

from ppmerge.byte_merger import ByteProfileMerger, ByteProfileUnPacker, MergedByteProfile
from ppmerge.merge import IndexOutOfRangeError

BLOBS = [b"first profile", b"", b"\x00\x01\x02\xff" * 10]


def test_wire_encoding_is_length_delimited_field_one():
    assert MergedByteProfile(profiles=[b"ab"]).to_bytes() == b"\x0a\x02ab"


def test_merge_keeps_order():
    merged = ByteProfileMerger().merge(*BLOBS)
    assert merged.profiles == BLOBS


def test_bytes_round_trip_keeps_empty_entries():
    merged = MergedByteProfile(profiles=list(BLOBS))
    assert MergedByteProfile.from_bytes(merged.to_bytes()).profiles == BLOBS


@pytest.mark.parametrize("idx", [0, 1, 2])
def test_compressed_round_trip(idx):
    merger = ByteProfileMerger()
    merger.merge(*BLOBS)
    buf = io.BytesIO()
    merger.write_compressed(buf)
    assert ByteProfileUnPacker(None).unpack_raw(buf.getvalue(), idx) == BLOBS[idx]


def test_uncompressed_matches_decompressed():
    merger = ByteProfileMerger()
    merger.merge(*BLOBS)
    plain = io.BytesIO()
    packed = io.BytesIO()
    merger.write_uncompressed(plain)
    merger.write_compressed(packed)
    assert gzip.decompress(packed.getvalue()) == plain.getvalue()


def test_unpack_from_given_profile():
    merged = ByteProfileMerger().merge(*BLOBS)
    assert ByteProfileUnPacker(merged).unpack(2) == BLOBS[2]


def test_unpack_out_of_range():
    merged = ByteProfileMerger().merge(*BLOBS)
    with pytest.raises(IndexOutOfRangeError):
        ByteProfileUnPacker(merged).unpack(3)


def test_unpack_raw_rejects_non_gzip():
    with pytest.raises(OSError):
        ByteProfileUnPacker(None).unpack_raw(b"not gzip data", 0)