"""The packing compression algorithm for messages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from capnwire.stream import WORD_SIZE

_ZERO_WORD = bytes(WORD_SIZE)
_MAX_RUN = 255
# At most a tag, a whole word and an uncompressed word count are written at once.
_MIN_BUF = 10


@dataclass(frozen=True)
class PackResult:
    """The outcome of one call to ``Packer.pack``."""

    completed: bool
    bytes_written: int


class Packer:
    """Packs a sequence of words into output buffers, one buffer at a time."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]) -> None:
        data = bytes(data)
        if len(data) % WORD_SIZE:
            raise ValueError("input is not a whole number of words")
        self._input = data
        self._word_count = len(data) // WORD_SIZE
        self._pos = 0
        self._active_copy: Optional[bytes] = None

    def _word(self, index: int) -> bytes:
        return self._input[index * WORD_SIZE:(index + 1) * WORD_SIZE]

    def _run_length(self, keep) -> int:
        end = min(self._word_count, self._pos + _MAX_RUN)
        count = 0
        for index in range(self._pos, end):
            if not keep(self._word(index)):
                break
            count += 1
        return count

    def pack(self, output: Union[bytearray, memoryview]) -> PackResult:
        """Pack words into ``output``, which may not be used in full.

        At least 10 bytes are needed to write a word; with less room no
        new word is written.
        """
        out = memoryview(output)
        if out.readonly:
            raise TypeError("output buffer must be writable")
        if out.format != "B" or out.ndim != 1:
            out = out.cast("B")
        size = len(out)
        pos = 0

        if self._active_copy is not None:
            pending = self._active_copy
            take = min(len(pending), size)
            out[:take] = pending[:take]
            if take < len(pending):
                self._active_copy = pending[take:]
                return PackResult(False, size)
            self._active_copy = None
            pos = take

        while True:
            if self._pos >= self._word_count:
                completed = True
                break
            if size - pos < _MIN_BUF:
                completed = False
                break

            word = self._word(self._pos)
            self._pos += 1

            if word == _ZERO_WORD:
                zeros = self._run_length(lambda w: w == _ZERO_WORD)
                self._pos += zeros
                out[pos] = 0
                out[pos + 1] = zeros
                pos += 2
                continue

            tag_pos = pos
            pos += 1
            tag = 0
            for bit, byte in enumerate(word):
                if byte:
                    tag |= 1 << bit
                    out[pos] = byte
                    pos += 1
            out[tag_pos] = tag

            if tag == 0xFF:
                count = self._run_length(lambda w: w.count(0) < 2)
                out[pos] = count
                pos += 1
                start = self._pos * WORD_SIZE
                self._pos += count
                to_copy = self._input[start:self._pos * WORD_SIZE]
                room = size - pos
                if len(to_copy) > room:
                    out[pos:] = to_copy[:room]
                    self._active_copy = to_copy[room:]
                    return PackResult(False, size)
                out[pos:pos + len(to_copy)] = to_copy
                pos += len(to_copy)

        return PackResult(completed, pos)


def pack(data: Union[bytes, bytearray, memoryview]) -> bytes:
    """Pack a whole sequence of words and return the packed bytes."""
    packer = Packer(data)
    buffer = bytearray(256)
    chunks = []
    while True:
        result = packer.pack(buffer)
        chunks.append(bytes(buffer[:result.bytes_written]))
        if result.completed:
            return b"".join(chunks)