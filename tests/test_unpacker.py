import pytest
from hypothesis import given, strategies as st

from capnwire.packer import pack
from capnwire.unpacker import (
    IncompleteError,
    StopReason,
    Unpacker,
    unpack,
)


def w(*values):
    return bytes(values)


CASES = [
    (b"", b""),
    (w(0, 0, 0, 0, 0, 0, 0, 0), w(0, 0)),
    (w(0, 0, 12, 0, 0, 34, 0, 0), w(0b00100100, 12, 34)),
    (w(1, 3, 2, 4, 5, 7, 6, 8), w(0b11111111, 1, 3, 2, 4, 5, 7, 6, 8, 0)),
    (
        w(0, 0, 0, 0, 0, 0, 0, 0) + w(1, 3, 2, 4, 5, 7, 6, 8),
        w(0, 0, 0b11111111, 1, 3, 2, 4, 5, 7, 6, 8, 0),
    ),
    (
        w(0, 0, 12, 0, 0, 34, 0, 0) + w(1, 3, 2, 4, 5, 7, 6, 8),
        w(0b00100100, 12, 34, 0b11111111, 1, 3, 2, 4, 5, 7, 6, 8, 0),
    ),
    (
        w(1, 3, 2, 4, 5, 7, 6, 8) + w(8, 6, 7, 5, 4, 2, 3, 1),
        w(0b11111111, 1, 3, 2, 4, 5, 7, 6, 8, 1, 8, 6, 7, 5, 4, 2, 3, 1),
    ),
    (
        w(1, 2, 3, 4, 5, 6, 7, 8) * 4 + w(0, 2, 4, 0, 9, 0, 5, 1),
        w(
            0b11111111, 1, 2, 3, 4, 5, 6, 7, 8, 3, 1, 2, 3, 4, 5, 6, 7, 8, 1, 2, 3, 4, 5, 6, 7,
            8, 1, 2, 3, 4, 5, 6, 7, 8, 0b11010110, 2, 4, 9, 5, 1,
        ),
    ),
    (
        w(1, 2, 3, 4, 5, 6, 7, 8) * 2
        + w(6, 2, 4, 3, 9, 0, 5, 1)
        + w(1, 2, 3, 4, 5, 6, 7, 8)
        + w(0, 2, 4, 0, 9, 0, 5, 1),
        w(
            0b11111111, 1, 2, 3, 4, 5, 6, 7, 8, 3, 1, 2, 3, 4, 5, 6, 7, 8, 6, 2, 4, 3, 9, 0, 5,
            1, 1, 2, 3, 4, 5, 6, 7, 8, 0b11010110, 2, 4, 9, 5, 1,
        ),
    ),
    (
        w(8, 0, 100, 6, 0, 1, 1, 2) + bytes(24) + w(0, 0, 1, 0, 2, 0, 3, 1),
        w(0b11101101, 8, 100, 6, 1, 1, 2, 0, 2, 0b11010100, 1, 2, 3, 1),
    ),
]


def unpack_in_chunks(packed, word_count, size):
    unpacker = Unpacker()
    out = bytearray(b"\xde" * (word_count * 8))
    view = memoryview(out)
    written = 0
    for start in range(0, len(packed), size):
        chunk = packed[start:start + size]
        consumed = 0
        while consumed < len(chunk):
            result = unpacker.unpack(chunk[consumed:], view[written * 8:])
            consumed += result.bytes_read
            written += result.words_written
            if result.reason is StopReason.NEED_INPUT:
                break
            if result.bytes_read == 0 and result.words_written == 0:
                break
    unpacker.finish()
    return bytes(out), written


@pytest.mark.parametrize("unpacked, packed", CASES)
def test_unpack_whole(unpacked, packed):
    assert unpack(packed) == unpacked


@pytest.mark.parametrize("unpacked, packed", CASES)
@pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 10])
def test_unpack_in_small_chunks(unpacked, packed, size):
    out, written = unpack_in_chunks(packed, len(unpacked) // 8, size)
    assert out == unpacked
    assert written == len(unpacked) // 8


def test_unpack_reports_progress():
    unpacker = Unpacker()
    out = bytearray(16)
    result = unpacker.unpack(w(0b00100100, 12, 34), out)
    assert result.bytes_read == 3
    assert result.words_written == 1
    assert result.reason is StopReason.NEED_INPUT
    assert bytes(out[:8]) == w(0, 0, 12, 0, 0, 34, 0, 0)


def test_unpack_needs_output_then_continues_nulls():
    unpacker = Unpacker()
    out = bytearray(16)
    result = unpacker.unpack(w(0, 3), out)
    assert (result.bytes_read, result.words_written) == (2, 2)
    assert result.reason is StopReason.NEED_OUTPUT
    with pytest.raises(IncompleteError) as info:
        unpacker.finish()
    assert info.value.bytes_needed == 0
    more = bytearray(b"\xff" * 32)
    result = unpacker.unpack(b"", more)
    assert result.words_written == 2
    assert bytes(more[:16]) == bytes(16)
    unpacker.finish()


def test_unpack_needs_output_for_uncompressed_words():
    packed = w(0xFF, 1, 2, 3, 4, 5, 6, 7, 8, 2) + w(9, 9, 9, 9, 9, 9, 9, 9) * 2
    unpacker = Unpacker()
    first = bytearray(16)
    result = unpacker.unpack(packed, first)
    assert result.reason is StopReason.NEED_OUTPUT
    assert result.words_written == 2
    second = bytearray(8)
    result2 = unpacker.unpack(packed[result.bytes_read:], second)
    assert result2.words_written == 1
    assert bytes(first) + bytes(second) == w(1, 2, 3, 4, 5, 6, 7, 8) + w(9, 9, 9, 9, 9, 9, 9, 9) * 2
    unpacker.finish()


def test_finish_partial_tagged_word():
    unpacker = Unpacker()
    unpacker.unpack(w(0b11, 1), bytearray(8))
    with pytest.raises(IncompleteError) as info:
        unpacker.finish()
    assert info.value.bytes_needed == 1
    assert str(info.value) == "incomplete packed input, 1 bytes required to unpack"


def test_finish_partial_uncompressed_word():
    unpacker = Unpacker()
    unpacker.unpack(w(0xFF, 1, 2), bytearray(8))
    with pytest.raises(IncompleteError) as info:
        unpacker.finish()
    assert info.value.bytes_needed == 7


def test_finish_missing_null_count():
    unpacker = Unpacker()
    unpacker.unpack(w(0), bytearray(8))
    with pytest.raises(IncompleteError) as info:
        unpacker.finish()
    assert info.value.bytes_needed == 1


def test_finish_while_writing_uncompressed():
    unpacker = Unpacker()
    unpacker.unpack(w(0xFF, 1, 2, 3, 4, 5, 6, 7, 8, 2, 9, 9, 9), bytearray(32))
    with pytest.raises(IncompleteError) as info:
        unpacker.finish()
    assert info.value.bytes_needed == 13


def test_unfinished_message_text():
    assert str(IncompleteError(0)) == "unfinished packed input, more data remaining in unpacker"


def test_unpack_function_raises_on_truncated_input():
    with pytest.raises(IncompleteError):
        unpack(w(0xFF, 1, 2, 3))


def test_output_must_be_whole_words():
    with pytest.raises(ValueError):
        Unpacker().unpack(w(0, 0), bytearray(5))


def test_output_must_be_writable():
    with pytest.raises(TypeError):
        Unpacker().unpack(w(0, 0), bytes(8))


def test_long_null_run_across_small_buffers():
    data = bytes(8 * 300)
    assert unpack(pack(data)) == data


_words = st.lists(
    st.one_of(
        st.just(bytes(8)),
        st.binary(min_size=8, max_size=8),
        st.binary(min_size=8, max_size=8).map(lambda b: b.replace(b"\x00", b"\x01")),
    ),
    max_size=40,
).map(b"".join)


@given(_words)
def test_roundtrip(data):
    assert unpack(pack(data)) == data


@given(_words, st.integers(min_value=1, max_value=12))
def test_roundtrip_in_chunks(data, size):
    out, written = unpack_in_chunks(pack(data), len(data) // 8, size)
    assert out == data
    assert written == len(data) // 8