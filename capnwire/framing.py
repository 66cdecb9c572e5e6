"""Reading and writing framed messages, in plain and packed encoding."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import BinaryIO, Iterable, List, Optional, Tuple, Union

from capnwire.packer import pack
from capnwire.stream import (
    WORD_SIZE,
    SegmentLenReader,
    StreamTable,
    StreamTableRef,
    TableReadError,
)
from capnwire.unpacker import IncompleteError, StopReason, Unpacker

BytesLike = Union[bytes, bytearray, memoryview]

DEFAULT_TRAVERSAL_LIMIT = 8 * 1024 * 1024
"""The default number of words a reader may traverse."""

DEFAULT_SEGMENT_LIMIT = 512
"""The default number of segments a streamed message may hold."""


class ReadError(Exception):
    """A message could not be read from a flat byte sequence."""

    class Kind(Enum):
        TABLE = auto()
        SEGMENT_TOO_LARGE = auto()
        MESSAGE_TOO_LARGE = auto()
        INCOMPLETE = auto()

    _MESSAGES = {
        Kind.SEGMENT_TOO_LARGE: "segment too large",
        Kind.MESSAGE_TOO_LARGE: "message too large",
        Kind.INCOMPLETE: "incomplete message",
    }

    def __init__(
        self,
        kind: "ReadError.Kind",
        *,
        segment: Optional[int] = None,
        table: Optional[TableReadError] = None,
    ) -> None:
        if kind is ReadError.Kind.TABLE and table is None:
            raise TypeError("table errors require the table error that caused them")
        if kind is ReadError.Kind.SEGMENT_TOO_LARGE and segment is None:
            raise TypeError("segment errors require the segment id")
        self.kind = kind
        self.segment = segment
        self.table = table
        message = str(table) if kind is ReadError.Kind.TABLE else self._MESSAGES[kind]
        super().__init__(message)
        if table is not None:
            self.__cause__ = table

    def __str__(self) -> str:
        return self.args[0]


class StreamError(Exception):
    """A message could not be read from a stream."""

    class Kind(Enum):
        TABLE = auto()
        SEGMENT_TOO_LARGE = auto()
        MESSAGE_TOO_LARGE = auto()
        IO = auto()

    _MESSAGES = {
        Kind.SEGMENT_TOO_LARGE: "segment too large",
        Kind.MESSAGE_TOO_LARGE: "message too large",
    }

    def __init__(
        self,
        kind: "StreamError.Kind",
        *,
        segment: Optional[int] = None,
        table: Optional[TableReadError] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if kind is StreamError.Kind.TABLE and table is None:
            raise TypeError("table errors require the table error that caused them")
        if kind is StreamError.Kind.IO and error is None:
            raise TypeError("I/O errors require the error that caused them")
        if kind is StreamError.Kind.SEGMENT_TOO_LARGE and segment is None:
            raise TypeError("segment errors require the segment id")
        self.kind = kind
        self.segment = segment
        self.table = table
        self.error = error
        if kind is StreamError.Kind.TABLE:
            message = str(table)
        elif kind is StreamError.Kind.IO:
            message = str(error)
        else:
            message = self._MESSAGES[kind]
        super().__init__(message)
        cause = table if table is not None else error
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.args[0]


def _map_read_err(err: ReadError) -> StreamError:
    if err.kind is ReadError.Kind.TABLE:
        return StreamError(StreamError.Kind.TABLE, table=err.table)
    if err.kind is ReadError.Kind.SEGMENT_TOO_LARGE:
        return StreamError(StreamError.Kind.SEGMENT_TOO_LARGE, segment=err.segment)
    if err.kind is ReadError.Kind.MESSAGE_TOO_LARGE:
        return StreamError(StreamError.Kind.MESSAGE_TOO_LARGE)
    raise AssertionError("a stream never reports an incomplete message table")


@dataclass(frozen=True)
class StreamOptions:
    """Limits applied while reading a message from a stream."""

    segment_limit: int = DEFAULT_SEGMENT_LIMIT
    read_limit: int = DEFAULT_TRAVERSAL_LIMIT


def _whole_words(data: BytesLike) -> bytes:
    data = bytes(data)
    if len(data) % WORD_SIZE:
        raise ValueError("input is not a whole number of words")
    return data


def _read_table(data: bytes) -> Tuple[StreamTableRef, bytes]:
    try:
        table, rest = StreamTableRef.try_read(data)
    except TableReadError as err:
        raise ReadError(ReadError.Kind.TABLE, table=err) from err
    return table, bytes(rest)


def _segment_len(length: SegmentLenReader, segment_id: int) -> int:
    words = length.try_get()
    if words is None:
        raise ReadError(ReadError.Kind.SEGMENT_TOO_LARGE, segment=segment_id)
    return words


class TableSegmentSet:
    """Segments read straight from a framed message, using its table as is.

    Finding a segment walks the table, so it costs time in proportion to its id.
    """

    __slots__ = ("_table", "_data")

    def __init__(self, table: StreamTableRef, data: bytes) -> None:
        self._table = table
        self._data = data

    @classmethod
    def from_words(cls, data: BytesLike) -> Tuple["TableSegmentSet", bytes]:
        """Read a message from ``data``; return it and the bytes after it."""
        table, rest = _read_table(_whole_words(data))
        total = 0
        for segment_id, length in enumerate(table.segments()):
            words = length.try_get()
            if words is None:
                raise ReadError(ReadError.Kind.SEGMENT_TOO_LARGE, segment=segment_id)
            total += words
        end = total * WORD_SIZE
        if end > len(rest):
            raise ReadError(ReadError.Kind.INCOMPLETE)
        return cls(table, rest[:end]), rest[end:]

    def segment(self, segment_id: int) -> Optional[bytes]:
        """Return the bytes of a segment, or None if there is no such segment."""
        lengths = self._table.segments()
        if not 0 <= segment_id < len(lengths):
            return None
        start = sum(length.raw() for length in lengths[:segment_id])
        end = start + lengths[segment_id].raw()
        return self._data[start * WORD_SIZE:end * WORD_SIZE]

    def size_in_words(self) -> int:
        """Return the size of all segments together, in words."""
        return len(self._data) // WORD_SIZE


@dataclass(frozen=True)
class SegmentSetTable:
    """Start positions of contiguous segments, except the first, which starts at 0."""

    starts: Tuple[int, ...]

    @classmethod
    def from_stream(
        cls, table: StreamTableRef, limit: int
    ) -> Tuple["SegmentSetTable", int]:
        """Build a table from a stream table; return it and the message length in words.

        Raises ReadError if the message is longer than ``limit`` words.
        """
        first, rest = table.split_first()
        position = _segment_len(first, 0)
        if position > limit:
            raise ReadError(ReadError.Kind.MESSAGE_TOO_LARGE)
        starts: List[int] = []
        for segment_id, length in enumerate(rest, start=1):
            new_position = position + _segment_len(length, segment_id)
            if new_position > limit:
                raise ReadError(ReadError.Kind.MESSAGE_TOO_LARGE)
            starts.append(position)
            position = new_position
        return cls(tuple(starts)), position

    def segment_bounds(self, segment_id: int) -> Optional[Tuple[int, Optional[int]]]:
        """Return the start and end word of a segment; an end of None means the end of the data."""
        if segment_id < 0:
            return None
        if segment_id == 0:
            start = 0
        elif segment_id - 1 < len(self.starts):
            start = self.starts[segment_id - 1]
        else:
            return None
        end = self.starts[segment_id] if segment_id < len(self.starts) else None
        return start, end

    def _last_start(self) -> int:
        return self.starts[-1] if self.starts else 0

    def _count(self) -> int:
        return len(self.starts) + 1


class SegmentSet:
    """A set of read-only segments laid out one after another."""

    __slots__ = ("_table", "_data")

    def __init__(self, table: SegmentSetTable, data: BytesLike) -> None:
        data = _whole_words(data)
        if table._last_start() > len(data) // WORD_SIZE:
            raise ValueError("incomplete data!")
        self._table = table
        self._data = data

    def segment(self, segment_id: int) -> Optional[bytes]:
        """Return the bytes of a segment, or None if there is no such segment."""
        bounds = self._table.segment_bounds(segment_id)
        if bounds is None:
            return None
        start, end = bounds
        stop = None if end is None else end * WORD_SIZE
        return self._data[start * WORD_SIZE:stop]

    def size_in_words(self) -> int:
        """Return the size of all segments together, in words."""
        return len(self._data) // WORD_SIZE

    def segments(self) -> List[bytes]:
        """Return the bytes of every segment, in order."""
        return [self.segment(segment_id) for segment_id in range(self._table._count())]

    def __repr__(self) -> str:
        return f"SegmentSet(segments={self._table._count()}, words={self.size_in_words()})"


def read_from_slice(data: BytesLike) -> Tuple[SegmentSet, bytes]:
    """Read a message from a flat byte sequence; return it and the bytes after it."""
    table, content = _read_table(_whole_words(data))
    segment_table, message_len = SegmentSetTable.from_stream(
        table, len(content) // WORD_SIZE
    )
    end = message_len * WORD_SIZE
    if len(content) < end:
        raise ReadError(ReadError.Kind.INCOMPLETE)
    return SegmentSet(segment_table, content[:end]), content[end:]


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = stream.read(remaining)
        if not chunk:
            raise EOFError("failed to fill whole buffer")
        chunks.append(bytes(chunk))
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_message(read_words, options: StreamOptions) -> SegmentSet:
    """Read a framed message with ``read_words(count)``, which returns ``count`` words."""
    try:
        first = read_words(1)
        try:
            table, _ = StreamTableRef.try_read(first)
        except TableReadError as err:
            if err.kind is not TableReadError.Kind.INCOMPLETE:
                raise StreamError(StreamError.Kind.TABLE, table=err) from err
            if err.count >= options.segment_limit:
                raise StreamError(
                    StreamError.Kind.TABLE,
                    table=TableReadError(TableReadError.Kind.TOO_MANY_SEGMENTS),
                ) from None
            table, _ = StreamTableRef.try_read(first + read_words(err.required))
        try:
            segment_table, message_len = SegmentSetTable.from_stream(
                table, options.read_limit
            )
        except ReadError as err:
            raise _map_read_err(err) from err
        data = read_words(message_len)
    except (OSError, EOFError) as err:
        raise StreamError(StreamError.Kind.IO, error=err) from err
    return SegmentSet(segment_table, data)


def read_from_stream(
    stream: BinaryIO, options: Optional[StreamOptions] = None
) -> SegmentSet:
    """Read one message from a binary stream in the standard framing."""
    options = options if options is not None else StreamOptions()
    return _read_message(lambda count: _read_exact(stream, count * WORD_SIZE), options)


class PackedStream:
    """A binary stream paired with an unpacker, for reading words from packed input.

    Streams that offer ``peek`` are read no further than the unpacker needs;
    others are read ``buffer_size`` bytes at a time.
    """

    def __init__(self, stream: BinaryIO, buffer_size: int = 8192) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer size must be positive")
        self._unpacker = Unpacker()
        self._stream = stream
        self._buffer_size = buffer_size
        self._pending = b""
        self._peek = getattr(stream, "peek", None)

    def _fill_buf(self) -> bytes:
        if self._peek is not None:
            return bytes(self._peek(self._buffer_size)[:self._buffer_size])
        if not self._pending:
            self._pending = bytes(self._stream.read(self._buffer_size) or b"")
        return self._pending

    def _consume(self, count: int) -> None:
        if not count:
            return
        if self._peek is not None:
            self._stream.read(count)
        else:
            self._pending = self._pending[count:]

    @staticmethod
    def _words_view(out) -> memoryview:
        view = memoryview(out)
        if view.format != "B" or view.ndim != 1:
            view = view.cast("B")
        if len(view) % WORD_SIZE:
            raise ValueError("output buffer is not a whole number of words")
        return view

    def read(self, out) -> int:
        """Unpack words into the writable buffer ``out``; return how many were written.

        Returns 0 at the end of the input. Raises EOFError if the input ends
        in the middle of a packed word.
        """
        view = self._words_view(out)
        if not len(view):
            return 0
        while True:
            buf = self._fill_buf()
            if not buf:
                try:
                    self._unpacker.finish()
                except IncompleteError as err:
                    raise EOFError(str(err)) from err
                return 0
            result = self._unpacker.unpack(buf, view)
            self._consume(result.bytes_read)
            if result.reason is StopReason.NEED_INPUT and result.words_written == 0:
                continue
            return result.words_written

    def read_exact(self, out) -> None:
        """Fill ``out`` completely, raising EOFError if the input runs out first."""
        view = self._words_view(out)
        written = 0
        while written < len(view):
            count = self.read(view[written:])
            if count == 0:
                break
            written += count * WORD_SIZE
        if written < len(view):
            raise EOFError("failed to fill whole buffer")

    def finish(self) -> None:
        """Flush the unpacker, raising an error if more packed data was expected."""
        while True:
            buf = self._fill_buf()
            if not buf:
                try:
                    self._unpacker.finish()
                except IncompleteError as err:
                    raise EOFError(str(err)) from err
                return
            result = self._unpacker.unpack(buf, bytearray())
            self._consume(result.bytes_read)
            if result.reason is StopReason.NEED_OUTPUT:
                try:
                    self._unpacker.finish()
                except IncompleteError as err:
                    raise OSError(str(err)) from err
                return

    def into_parts(self) -> Tuple[Unpacker, BinaryIO, bytes]:
        """Return the unpacker, the stream, and any bytes read ahead but not yet unpacked."""
        return self._unpacker, self._stream, self._pending


def read_with_packed_stream(
    stream: PackedStream, options: Optional[StreamOptions] = None
) -> SegmentSet:
    """Read one message from a packed stream, leaving it ready for further reads."""
    options = options if options is not None else StreamOptions()

    def read_words(count: int) -> bytes:
        buffer = bytearray(count * WORD_SIZE)
        stream.read_exact(buffer)
        return bytes(buffer)

    return _read_message(read_words, options)


def read_from_packed_stream(
    stream: BinaryIO, options: Optional[StreamOptions] = None
) -> SegmentSet:
    """Read one packed message from a binary stream and check that it ends cleanly."""
    packed = PackedStream(stream)
    message = read_with_packed_stream(packed, options)
    try:
        packed.finish()
    except (OSError, EOFError) as err:
        raise StreamError(StreamError.Kind.IO, error=err) from err
    return message


def _write_all(stream: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while len(view):
        written = stream.write(view)
        if not written:
            raise OSError("failed to write whole buffer")
        view = view[written:]


def write_message(stream: BinaryIO, segments: Iterable[BytesLike]) -> None:
    """Write a message's segments to a binary stream in the standard framing."""
    segments = [_whole_words(segment) for segment in segments]
    table = StreamTable.from_segments(segments)
    for chunk in (table.as_bytes(), *segments):
        _write_all(stream, chunk)


def write_message_packed(stream: BinaryIO, segments: Iterable[BytesLike]) -> None:
    """Write a message's segments to a binary stream in packed encoding."""
    segments = [_whole_words(segment) for segment in segments]
    table = StreamTable.from_segments(segments)
    for chunk in (table.as_bytes(), *segments):
        _write_all(stream, pack(chunk))