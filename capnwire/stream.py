"""The segment table that frames a message for streaming."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterable, Optional, Sequence, Tuple

WORD_SIZE = 8
"""Size of a word in bytes."""

SEGMENT_LEN_MAX = (1 << 29) - 1
"""The largest segment length, in words, that a message can hold."""

_U32_MAX = 0xFFFF_FFFF


def table_size_from_count(count: int) -> int:
    """Return the size of the stream table in words for ``count`` segments."""
    return count // 2 + 1


_MAX_TABLE = table_size_from_count(_U32_MAX - 1)


def table_size_of(segments: Sequence) -> int:
    """Return the size of the stream table in words for the given segments."""
    return table_size_from_count(len(segments))


def max_table_size_from_len(length: int) -> int:
    """Return how many segments a table of ``length`` words can describe."""
    if length <= 0:
        return 0
    return min(length * 2 - 1, _MAX_TABLE)


def _segment_words(segment) -> int:
    size = memoryview(segment).nbytes
    if size % WORD_SIZE:
        raise ValueError(f"segment of {size} bytes is not a whole number of words")
    return size // WORD_SIZE


def _encode_table(lengths: Sequence[int]) -> bytes:
    if not lengths:
        raise ValueError("a message has at least one segment")
    if any(not 0 <= n <= _U32_MAX for n in lengths):
        raise ValueError("segment length does not fit in a stream table")
    values = [len(lengths) - 1, *lengths]
    if len(values) % 2:
        values.append(0)
    return struct.pack(f"<{len(values)}I", *values)


def write_table(segments: Iterable) -> bytes:
    """Encode the stream framing table for the given segments."""
    return _encode_table([_segment_words(s) for s in segments])


class TableReadError(Exception):
    """The stream table could not be read."""

    class Kind(Enum):
        TOO_MANY_SEGMENTS = auto()
        EMPTY = auto()
        INCOMPLETE = auto()

    _MESSAGES = {
        Kind.TOO_MANY_SEGMENTS: "too many segments",
        Kind.EMPTY: "empty input",
        Kind.INCOMPLETE: "incomplete table",
    }

    def __init__(
        self,
        kind: "TableReadError.Kind",
        count: Optional[int] = None,
        required: Optional[int] = None,
    ) -> None:
        self.kind = kind
        self.count = count
        self.required = required
        super().__init__(self._MESSAGES[kind])

    def __str__(self) -> str:
        return self.args[0]


@dataclass(frozen=True)
class SegmentLenReader:
    """A segment length as it appears in a stream table."""

    _value: int

    def raw(self) -> int:
        """Return the length exactly as stored."""
        return self._value

    def try_get(self) -> Optional[int]:
        """Return the length in words, or None if no segment can be that large."""
        return self._value if self._value <= SEGMENT_LEN_MAX else None

    def __repr__(self) -> str:
        return repr(self._value)


@dataclass(frozen=True)
class StreamTableRef:
    """A read view of the segment lengths in a stream table."""

    _lengths: Tuple[int, ...]

    def __post_init__(self) -> None:
        if not self._lengths:
            raise ValueError("a stream table has at least one segment")

    @classmethod
    def try_read(cls, data) -> Tuple["StreamTableRef", object]:
        """Read a table from the start of ``data``.

        Returns the table and the rest of ``data`` after it.
        """
        view = memoryview(data)
        if view.nbytes % WORD_SIZE:
            raise ValueError("input is not a whole number of words")
        words = view.nbytes // WORD_SIZE
        if words == 0:
            raise TableReadError(TableReadError.Kind.EMPTY)
        (first,) = struct.unpack_from("<I", view, 0)
        if first == _U32_MAX:
            raise TableReadError(TableReadError.Kind.TOO_MANY_SEGMENTS)
        count = first + 1
        end_of_table = table_size_from_count(count)
        if words < end_of_table:
            raise TableReadError(
                TableReadError.Kind.INCOMPLETE,
                count=count,
                required=end_of_table - words,
            )
        lengths = struct.unpack_from(f"<{count}I", view, 4)
        return cls(tuple(lengths)), data[end_of_table * WORD_SIZE:]

    def count(self) -> int:
        """Return the number of segments in the table."""
        return len(self._lengths)

    def segments(self) -> Tuple[SegmentLenReader, ...]:
        """Return the length of every segment."""
        return tuple(SegmentLenReader(n) for n in self._lengths)

    def split_first(self) -> Tuple[SegmentLenReader, Tuple[SegmentLenReader, ...]]:
        """Return the first segment length and the rest."""
        first, *rest = self.segments()
        return first, tuple(rest)

    def to_owned(self) -> "StreamTable":
        """Return an owned, encoded copy of this table."""
        table = StreamTable()
        table._table = _encode_table(self._lengths)
        return table

    def __repr__(self) -> str:
        return f"StreamTableRef({list(self._lengths)!r})"


class StreamTable:
    """An encoded segment table, ready to be written before a message."""

    __slots__ = ("_table",)

    def __init__(self) -> None:
        self._table = _encode_table([0])

    @classmethod
    def from_segments(cls, segments: Iterable) -> "StreamTable":
        """Build a table describing the given segments."""
        table = cls()
        table.write_segments(segments)
        return table

    def write_segments(self, segments: Iterable) -> None:
        """Replace the contents of this table with one for the given segments."""
        self._table = write_table(segments)

    def as_bytes(self) -> bytes:
        """Return the encoded table."""
        return self._table

    def as_ref(self) -> StreamTableRef:
        """Return a read view of this table."""
        return StreamTableRef.try_read(self._table)[0]

    def __bytes__(self) -> bytes:
        return self._table

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StreamTable):
            return NotImplemented
        return self._table == other._table

    def __repr__(self) -> str:
        return f"StreamTable({list(s.raw() for s in self.as_ref().segments())!r})"