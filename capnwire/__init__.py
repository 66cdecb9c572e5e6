"""Cap'n Proto message framing, segment tables, the packed encoding and data blobs."""

__version__ = "0.1.0"

__all__ = ["data", "framing", "packer", "stream", "unpacker"]