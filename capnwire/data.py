"""Fixed size blobs of bytes held in a message."""

from __future__ import annotations

from typing import Iterator, Union

MAX_LEN = (1 << 29) - 1
"""The largest number of bytes a blob in a message can hold."""

BytesLike = Union[bytes, bytearray, memoryview]


class TryFromSliceError(ValueError):
    """A byte sequence was too large to be held in a message."""

    def __init__(self) -> None:
        super().__init__("attempted to create a data blob from too large a slice")


def _as_bytes(other: object) -> bytes | None:
    if isinstance(other, (Data, DataBuilder)):
        return bytes(other)
    if isinstance(other, (bytes, bytearray, memoryview)):
        return bytes(other)
    return None


class Data:
    """A read-only blob of bytes."""

    __slots__ = ("_value",)

    def __init__(self, value: BytesLike = b"") -> None:
        value = bytes(value)
        if len(value) > MAX_LEN:
            raise TryFromSliceError()
        self._value = value

    @classmethod
    def empty(cls) -> "Data":
        """Return an empty blob."""
        return cls(b"")

    @classmethod
    def from_slice(cls, value: BytesLike) -> "Data":
        """Return a blob holding a copy of ``value``.

        Raises ValueError if ``value`` is too large to be held in a message.
        """
        try:
            return cls.try_from_slice(value)
        except TryFromSliceError:
            raise ValueError(
                "slice is too large to be contained within a cap'n proto message"
            ) from None

    @classmethod
    def try_from_slice(cls, value: BytesLike) -> "Data":
        """Return a blob holding a copy of ``value``, raising TryFromSliceError if too large."""
        return cls(value)

    def is_empty(self) -> bool:
        """Whether the blob holds no bytes."""
        return not self._value

    def __len__(self) -> int:
        return len(self._value)

    def __bytes__(self) -> bytes:
        return self._value

    def __iter__(self) -> Iterator[int]:
        return iter(self._value)

    def __getitem__(self, index):
        return self._value[index]

    def __eq__(self, other: object) -> bool:
        value = _as_bytes(other)
        if value is None:
            return NotImplemented
        return self._value == value

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return f"Data({self._value!r})"


class DataBuilder:
    """A writable blob of bytes over a fixed size buffer.

    Writes go straight through to the buffer the builder was created over.
    """

    __slots__ = ("_view",)

    def __init__(self, buffer: Union[bytearray, memoryview]) -> None:
        view = memoryview(buffer)
        if view.readonly:
            raise TypeError("a data builder needs a writable buffer")
        if view.format != "B" or view.ndim != 1:
            view = view.cast("B")
        if len(view) > MAX_LEN:
            raise TryFromSliceError()
        self._view = view

    @classmethod
    def empty(cls) -> "DataBuilder":
        """Return a builder for an empty blob."""
        return cls(bytearray())

    def as_reader(self) -> Data:
        """Return a read-only blob with the current contents."""
        return Data(self._view)

    def is_empty(self) -> bool:
        """Whether the blob holds no bytes."""
        return len(self._view) == 0

    def __len__(self) -> int:
        return len(self._view)

    def __bytes__(self) -> bytes:
        return self._view.tobytes()

    def __iter__(self) -> Iterator[int]:
        return iter(self._view.tobytes())

    def __getitem__(self, index):
        item = self._view[index]
        return item.tobytes() if isinstance(item, memoryview) else item

    def __setitem__(self, index, value) -> None:
        self._view[index] = value

    def __eq__(self, other: object) -> bool:
        value = _as_bytes(other)
        if value is None:
            return NotImplemented
        return self._view.tobytes() == value

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"DataBuilder({self._view.tobytes()!r})"