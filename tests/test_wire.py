import pytest

from ppmerge.wire import (
    DecodeError,
    ProtoWriter,
    decode_packed,
    decode_varint,
    encode_varint,
    iter_fields,
    to_signed,
)


def test_encode_varint_known_value():
    assert encode_varint(300) == b"\xac\x02"


@pytest.mark.parametrize("value", [0, 1, 127, 128, 300, 2**32, 2**64 - 1])
def test_varint_round_trip(value):
    encoded = encode_varint(value)
    assert decode_varint(encoded, 0) == (value, len(encoded))


def test_negative_round_trips_through_signed():
    decoded, _ = decode_varint(encode_varint(-5), 0)
    assert to_signed(decoded) == -5


def test_encode_too_large():
    with pytest.raises(ValueError):
        encode_varint(2**64)


def test_truncated_varint():
    with pytest.raises(DecodeError):
        decode_varint(b"\x80", 0)


def test_writer_and_iter_fields():
    w = ProtoWriter()
    w.varint(1, 7)
    w.varint(2, 0)
    w.string(3, "hi")
    w.packed_varints(4, [1, 2, 300])
    w.boolean(5, True)
    fields = list(iter_fields(w.getvalue()))
    assert [f for f, _, _ in fields] == [1, 3, 4, 5]
    assert fields[0][2] == 7
    assert fields[1][2] == b"hi"
    assert decode_packed(fields[2][2]) == [1, 2, 300]
    assert fields[3][2] == 1


def test_decode_packed_unpacked_scalar():
    assert decode_packed(9) == [9]


def test_iter_fields_truncated_bytes():
    with pytest.raises(DecodeError):
        list(iter_fields(b"\x0a\x05ab"))


def test_iter_fields_bad_wire_type():
    with pytest.raises(DecodeError):
        list(iter_fields(b"\x0b"))