"""Unpacking of messages compressed with the packing algorithm."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterable, Optional, Union

from capnwire.stream import WORD_SIZE

BytesLike = Union[bytes, bytearray, memoryview]


class StopReason(Enum):
    """Why the unpacker stopped unpacking."""

    NEED_INPUT = auto()
    NEED_OUTPUT = auto()


@dataclass(frozen=True)
class UnpackResult:
    """The outcome of one call to ``Unpacker.unpack``."""

    bytes_read: int
    words_written: int
    reason: StopReason


class IncompleteError(ValueError):
    """The packed input ended before the unpacker finished.

    ``bytes_needed`` is 0 when the unpacker still had null words to write.
    """

    def __init__(self, bytes_needed: int) -> None:
        self.bytes_needed = bytes_needed
        if bytes_needed:
            message = f"incomplete packed input, {bytes_needed} bytes required to unpack"
        else:
            message = "unfinished packed input, more data remaining in unpacker"
        super().__init__(message)


class _Cursor:
    """Read position in the packed input and write position in the output."""

    __slots__ = ("src", "sp", "dst", "dp")

    def __init__(self, src: memoryview, dst: memoryview) -> None:
        self.src = src
        self.sp = 0
        self.dst = dst
        self.dp = 0

    @property
    def src_left(self) -> int:
        return len(self.src) - self.sp

    @property
    def dst_left(self) -> int:
        return len(self.dst) // WORD_SIZE - self.dp

    def take(self, count: int) -> bytes:
        data = bytes(self.src[self.sp:self.sp + count])
        self.sp += len(data)
        return data

    def take_byte(self) -> int:
        value = self.src[self.sp]
        self.sp += 1
        return value

    def take_rest(self) -> bytes:
        return self.take(self.src_left)

    def put_words(self, data: bytes) -> None:
        start = self.dp * WORD_SIZE
        self.dst[start:start + len(data)] = data
        self.dp += len(data) // WORD_SIZE

    def put_nulls(self, count: int) -> None:
        self.put_words(bytes(count * WORD_SIZE))


def _popcount(value: int) -> int:
    return bin(value).count("1")


@dataclass
class _PartialWord:
    """An uncompressed word of which only some bytes have arrived."""

    buf: bytearray
    written: int

    @classmethod
    def start(cls, data: bytes) -> "_PartialWord":
        buf = bytearray(WORD_SIZE)
        buf[:len(data)] = data
        return cls(buf, len(data))

    def needed_bytes(self) -> int:
        return WORD_SIZE - self.written

    def finish(self, cur: _Cursor) -> bool:
        needed = self.needed_bytes()
        if needed <= cur.src_left:
            self.buf[self.written:] = cur.take(needed)
            cur.put_words(bytes(self.buf))
            return True
        chunk = cur.take_rest()
        self.buf[self.written:self.written + len(chunk)] = chunk
        self.written += len(chunk)
        return False


@dataclass
class _PartialTaggedWord:
    """A tagged word of which only some of the non-zero bytes have arrived."""

    buf: bytearray
    tag: int
    written: int

    @classmethod
    def start(cls, tag: int, data: bytes) -> "_PartialTaggedWord":
        word = cls(bytearray(WORD_SIZE), tag, 0)
        word._fill(data)
        return word

    def needed_bytes(self) -> int:
        return _popcount(self.tag)

    def _fill(self, data: Iterable[int]) -> None:
        source = iter(data)
        while self.tag:
            if self.tag & 1:
                byte = next(source, None)
                if byte is None:
                    break
                self.buf[self.written] = byte
            self.tag >>= 1
            self.written += 1

    def finish(self, cur: _Cursor) -> bool:
        self._fill(cur.take(min(self.needed_bytes(), cur.src_left)))
        if self.tag:
            return False
        cur.put_words(bytes(self.buf))
        return True


class _Await(Enum):
    NULL_COUNT = auto()
    UNCOMPRESSED_COUNT = auto()


@dataclass
class _WritingNulls:
    count: int


@dataclass
class _WritingUncompressed:
    remaining: int
    partial: Optional[_PartialWord]


_State = Union[_PartialTaggedWord, _PartialWord, _Await, _WritingNulls, _WritingUncompressed]


def _writable_words(dst) -> memoryview:
    view = memoryview(dst)
    if view.readonly:
        raise TypeError("output buffer must be writable")
    if view.format != "B" or view.ndim != 1:
        view = view.cast("B")
    if len(view) % WORD_SIZE:
        raise ValueError("output buffer is not a whole number of words")
    return view


class Unpacker:
    """Unpacks packed bytes into words, keeping state between calls."""

    def __init__(self) -> None:
        self._state: Optional[_State] = None

    def unpack(self, src: BytesLike, dst) -> UnpackResult:
        """Unpack bytes from ``src`` into the writable word buffer ``dst``."""
        source = memoryview(src)
        if source.format != "B" or source.ndim != 1:
            source = source.cast("B")
        cur = _Cursor(source, _writable_words(dst))
        reason = self._unpack(cur)
        return UnpackResult(bytes_read=cur.sp, words_written=cur.dp, reason=reason)

    def _write_nulls(self, cur: _Cursor, count: int) -> Optional[StopReason]:
        room = cur.dst_left
        if room >= count:
            cur.put_nulls(count)
            return None
        cur.put_nulls(room)
        self._state = _WritingNulls(count - room)
        return StopReason.NEED_OUTPUT

    def _write_uncompressed(self, cur: _Cursor, count: int) -> Optional[StopReason]:
        full_words, partial_bytes = divmod(cur.src_left, WORD_SIZE)
        enough_input = full_words >= count
        words_to_read = count if enough_input else full_words

        if words_to_read > cur.dst_left:
            room = cur.dst_left
            cur.put_words(cur.take(room * WORD_SIZE))
            self._state = _WritingUncompressed(count - room, None)
            return StopReason.NEED_OUTPUT

        if not enough_input:
            cur.put_words(cur.take(full_words * WORD_SIZE))
            has_partial = partial_bytes != 0
            remaining = count - full_words - int(has_partial)
            partial = _PartialWord.start(cur.take_rest()) if has_partial else None
            self._state = _WritingUncompressed(remaining, partial)
            return StopReason.NEED_INPUT

        cur.put_words(cur.take(words_to_read * WORD_SIZE))
        return None

    def _needs_word_room(self) -> bool:
        state = self._state
        if isinstance(state, (_PartialTaggedWord, _PartialWord)):
            return True
        return isinstance(state, _WritingUncompressed) and state.partial is not None

    def _resume(self, cur: _Cursor) -> Optional[StopReason]:
        state, self._state = self._state, None
        if state is None:
            return None
        if isinstance(state, _PartialTaggedWord):
            if not state.finish(cur):
                self._state = state
                return StopReason.NEED_INPUT
            return None
        if isinstance(state, _PartialWord):
            if not state.finish(cur):
                self._state = state
                return StopReason.NEED_INPUT
            if cur.src_left == 0:
                self._state = _Await.UNCOMPRESSED_COUNT
                return StopReason.NEED_INPUT
            return self._write_uncompressed(cur, cur.take_byte())
        if state is _Await.NULL_COUNT:
            return self._write_nulls(cur, cur.take_byte())
        if state is _Await.UNCOMPRESSED_COUNT:
            return self._write_uncompressed(cur, cur.take_byte())
        if isinstance(state, _WritingNulls):
            return self._write_nulls(cur, state.count)
        if state.partial is not None and not state.partial.finish(cur):
            self._state = state
            return StopReason.NEED_INPUT
        return self._write_uncompressed(cur, state.remaining)

    def _unpack(self, cur: _Cursor) -> StopReason:
        # Pending null words need no input, so they are flushed even without any.
        if cur.src_left == 0 and not isinstance(self._state, _WritingNulls):
            return StopReason.NEED_INPUT
        if cur.dst_left == 0 and self._needs_word_room():
            return StopReason.NEED_OUTPUT

        stop = self._resume(cur)
        if stop is not None:
            return stop

        while True:
            if cur.src_left == 0:
                return StopReason.NEED_INPUT
            if cur.dst_left == 0:
                return StopReason.NEED_OUTPUT

            tag = cur.take_byte()
            if tag == 0x00:
                # The count byte gives the number of additional null words.
                cur.put_nulls(1)
                if cur.src_left == 0:
                    self._state = _Await.NULL_COUNT
                    return StopReason.NEED_INPUT
                count = cur.take_byte()
                if count:
                    stop = self._write_nulls(cur, count)
                    if stop is not None:
                        return stop
            elif tag == 0xFF:
                if cur.src_left < WORD_SIZE:
                    self._state = _PartialWord.start(cur.take_rest())
                    return StopReason.NEED_INPUT
                cur.put_words(cur.take(WORD_SIZE))
                if cur.src_left == 0:
                    self._state = _Await.UNCOMPRESSED_COUNT
                    return StopReason.NEED_INPUT
                count = cur.take_byte()
                if count:
                    stop = self._write_uncompressed(cur, count)
                    if stop is not None:
                        return stop
            else:
                needed = _popcount(tag)
                if cur.src_left < needed:
                    self._state = _PartialTaggedWord.start(tag, cur.take_rest())
                    return StopReason.NEED_INPUT
                source = iter(cur.take(needed))
                word = bytes(next(source) if tag >> bit & 1 else 0 for bit in range(WORD_SIZE))
                cur.put_words(word)

    def finish(self) -> None:
        """Raise IncompleteError if the unpacker has partial state left over."""
        state = self._state
        if state is None:
            return
        if isinstance(state, (_PartialTaggedWord,)):
            needed = state.needed_bytes()
        elif isinstance(state, _PartialWord):
            needed = state.needed_bytes() + 1
        elif isinstance(state, _Await):
            needed = 1
        elif isinstance(state, _WritingNulls):
            needed = 0
        else:
            partial = state.partial.needed_bytes() if state.partial is not None else 0
            needed = state.remaining * WORD_SIZE + partial
        raise IncompleteError(needed)


def unpack(data: BytesLike) -> bytes:
    """Unpack a whole packed byte sequence and return the words as bytes."""
    unpacker = Unpacker()
    source = memoryview(data)
    if source.format != "B" or source.ndim != 1:
        source = source.cast("B")
    buffer = bytearray(256 * WORD_SIZE)
    chunks = []
    pos = 0
    while True:
        result = unpacker.unpack(source[pos:], buffer)
        chunks.append(bytes(buffer[:result.words_written * WORD_SIZE]))
        pos += result.bytes_read
        if result.reason is StopReason.NEED_INPUT:
            break
    unpacker.finish()
    return b"".join(chunks)