# capnwire

Tools for the Cap'n Proto wire format at the level of whole messages: segments, the
segment table that frames them on a stream, and the packed encoding.

## Modules

- `capnwire.stream` covers the segment table that comes before a message on a stream.
  - `StreamTableRef.try_read` reads a table from the start of a byte sequence. It returns
    the table and the bytes that follow it.
  - `StreamTable` holds an encoded table. Build one with `StreamTable.from_segments`.
  - `write_table` encodes a table for a list of segments.
  - `table_size_from_count`, `table_size_of` and `max_table_size_from_len` give table
    sizes in words.
- `capnwire.packer` does packing compression. Use `Packer` to pack into output buffers one
  buffer at a time, or `pack` to pack in a single call.
- `capnwire.unpacker` reverses the packing. `Unpacker` keeps its state between calls.
  `unpack` unpacks in a single call.
- `capnwire.framing` reads and writes framed messages.
  - `read_from_slice` and `TableSegmentSet.from_words` read a message from bytes.
  - `read_from_stream` reads a message from a binary stream.
  - `read_from_packed_stream`, `read_with_packed_stream` and `PackedStream` read packed
    input.
  - `write_message` and `write_message_packed` write a message.
  - `StreamOptions` sets the segment limit and the read limit. The defaults are 512
    segments and 8 Mi words.
- `capnwire.data` provides `Data`, a read-only blob, and `DataBuilder`, a writable blob over
  a fixed buffer. Both refuse blobs longer than 2^29 - 1 bytes.

Words are 8 bytes long. Every segment and every word buffer must be a whole number of
words.

## Installation

```
pip install capnwire
```

The package has no runtime dependencies.

## Packing

```python
from capnwire.packer import pack
from capnwire.unpacker import unpack

raw = bytes([0, 0, 12, 0, 0, 34, 0, 0])
packed = pack(raw)           # b"\x24\x0c\x22"
assert unpack(packed) == raw
```

## Writing and reading a framed message

```python
import io
from capnwire.framing import write_message, read_from_stream, StreamOptions

segments = [bytes(16), bytes(8)]
buf = io.BytesIO()
write_message(buf, segments)

buf.seek(0)
message = read_from_stream(buf, StreamOptions())
print(message.segments())    # [b'\x00' * 16, b'\x00' * 8]
```

Use `write_message_packed` and `read_from_packed_stream` for the packed form. When a
stream has a `peek` method, `PackedStream` reads no further than the unpacker needs.
Otherwise it reads `buffer_size` bytes at a time, and `into_parts` returns any bytes it
read ahead.

## Errors

Reading raises exceptions instead of returning status values:

- `capnwire.framing` raises `ReadError` and `StreamError`. Each has a `kind` attribute
  that holds one of its `Kind` members.
- `capnwire.stream` raises `TableReadError` with `kind`, `count` and `required`.
- `capnwire.unpacker` raises `IncompleteError` with `bytes_needed`.
- Data that ends early while being read from a stream raises `EOFError`, which appears as
  a `StreamError` of kind `IO`.

## What it does not do

The package deals in raw segments only. It has no schemas and no struct, list or pointer
readers or builders. It has no message builder that allocates segments, and no RPC or
capabilities. It provides no command-line tool.

## Running the tests

```
pip install capnwire[test]
pytest
```