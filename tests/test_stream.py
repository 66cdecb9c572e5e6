import struct

import pytest
from hypothesis import given
from hypothesis import strategies as st

from capnwire.stream import (
    SEGMENT_LEN_MAX,
    StreamTable,
    StreamTableRef,
    TableReadError,
    max_table_size_from_len,
    table_size_from_count,
    table_size_of,
    write_table,
)

word_counts = st.lists(st.integers(min_value=0, max_value=32), min_size=1, max_size=20)


def _segments(counts):
    return [bytes(8 * n) for n in counts]


@given(word_counts)
def test_table_round_trip(counts):
    segments = _segments(counts)
    table = write_table(segments)
    assert len(table) == 8 * table_size_of(segments)
    payload = bytes(range(16))
    ref, rest = StreamTableRef.try_read(table + payload)
    assert rest == payload
    assert ref.count() == len(counts)
    assert [s.raw() for s in ref.segments()] == counts
    assert [s.try_get() for s in ref.segments()] == counts


@given(word_counts)
def test_to_owned_reencodes_same_bytes(counts):
    table = write_table(_segments(counts))
    ref, _ = StreamTableRef.try_read(table)
    owned = ref.to_owned()
    assert owned.as_bytes() == table
    assert owned.as_ref() == ref


@given(word_counts)
def test_stream_table_from_segments(counts):
    segments = _segments(counts)
    table = StreamTable.from_segments(segments)
    assert bytes(table) == write_table(segments)
    assert [s.raw() for s in table.as_ref().segments()] == counts


def test_write_segments_replaces_table():
    table = StreamTable.from_segments(_segments([1, 2, 3, 4, 5]))
    table.write_segments(_segments([6]))
    assert [s.raw() for s in table.as_ref().segments()] == [6]


def test_default_stream_table_is_one_empty_segment():
    table = StreamTable()
    assert table.as_bytes() == bytes(8)
    assert table.as_ref().count() == 1


def test_split_first():
    ref, _ = StreamTableRef.try_read(write_table(_segments([4, 5, 6])))
    first, rest = ref.split_first()
    assert first.raw() == 4
    assert [s.raw() for s in rest] == [5, 6]


def test_empty_input():
    with pytest.raises(TableReadError) as info:
        StreamTableRef.try_read(b"")
    assert info.value.kind is TableReadError.Kind.EMPTY
    assert str(info.value) == "empty input"


def test_too_many_segments():
    with pytest.raises(TableReadError) as info:
        StreamTableRef.try_read(struct.pack("<II", 0xFFFF_FFFF, 0))
    assert info.value.kind is TableReadError.Kind.TOO_MANY_SEGMENTS
    assert str(info.value) == "too many segments"


def test_incomplete_table_reports_count_and_required():
    table = write_table(_segments([1, 2, 3]))
    with pytest.raises(TableReadError) as info:
        StreamTableRef.try_read(table[:8])
    assert info.value.kind is TableReadError.Kind.INCOMPLETE
    assert info.value.count == 3
    assert info.value.required == table_size_from_count(3) - 1
    assert str(info.value) == "incomplete table"


def test_oversized_segment_length():
    ref, _ = StreamTableRef.try_read(struct.pack("<II", 0, 0xFFFF_FFFF))
    (segment,) = ref.segments()
    assert segment.raw() == 0xFFFF_FFFF
    assert segment.try_get() is None


def test_largest_segment_length_is_accepted():
    ref, _ = StreamTableRef.try_read(struct.pack("<II", 0, SEGMENT_LEN_MAX))
    assert ref.segments()[0].try_get() == SEGMENT_LEN_MAX


def test_partial_word_segment_rejected():
    with pytest.raises(ValueError):
        write_table([bytes(5)])


def test_no_segments_rejected():
    with pytest.raises(ValueError):
        write_table([])


@given(st.integers(min_value=1, max_value=10_000))
def test_table_size_fits_count_header(count):
    size = table_size_from_count(count)
    assert size * 2 >= count + 1
    assert (size - 1) * 2 < count + 1


def test_max_table_size_from_zero_length():
    assert max_table_size_from_len(0) == 0


@given(st.integers(min_value=1, max_value=10_000))
def test_max_table_size_fits_in_length(length):
    segments = max_table_size_from_len(length)
    assert table_size_from_count(segments) <= length
    assert table_size_from_count(segments + 1) > length


def test_max_table_size_saturates():
    assert max_table_size_from_len(2**40) == max_table_size_from_len(2**50)