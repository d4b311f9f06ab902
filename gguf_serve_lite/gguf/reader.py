"""
GGUF header and metadata reader.

Reads the fixed header and the leading key/value metadata of a GGUF file
without loading any tensor data. All integers are little-endian.

Layout:
    magic "GGUF" | version u32 | tensor_count u64 | kv_count u64 |
    kv_count x (key string | value type u32 | value)

Strings are a u64 byte length followed by UTF-8 bytes. Array values are a
u32 element type and a u64 element count followed by the elements; arrays
are skipped and reported as ARRAY_MARKER.
"""

import logging
import os
import struct
from typing import Any, BinaryIO, Dict, Optional

from gguf_serve_lite.core.errors import InvalidFormatError, ModelFileNotFoundError

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
ARRAY_MARKER = "[Array]"

# GGUF metadata value types
GGUF_TYPE_UINT8 = 0
GGUF_TYPE_INT8 = 1
GGUF_TYPE_UINT16 = 2
GGUF_TYPE_INT16 = 3
GGUF_TYPE_UINT32 = 4
GGUF_TYPE_INT32 = 5
GGUF_TYPE_FLOAT32 = 6
GGUF_TYPE_BOOL = 7
GGUF_TYPE_STRING = 8
GGUF_TYPE_ARRAY = 9
GGUF_TYPE_UINT64 = 10
GGUF_TYPE_INT64 = 11
GGUF_TYPE_FLOAT64 = 12

# Byte width of every fixed-size value type, used to skip values
FIXED_WIDTHS = {
    GGUF_TYPE_UINT8: 1,
    GGUF_TYPE_INT8: 1,
    GGUF_TYPE_UINT16: 2,
    GGUF_TYPE_INT16: 2,
    GGUF_TYPE_UINT32: 4,
    GGUF_TYPE_INT32: 4,
    GGUF_TYPE_FLOAT32: 4,
    GGUF_TYPE_BOOL: 1,
    GGUF_TYPE_UINT64: 8,
    GGUF_TYPE_INT64: 8,
    GGUF_TYPE_FLOAT64: 8,
}

DEFAULT_MAX_ENTRIES = 200
DEFAULT_MAX_KEY_LENGTH = 4096


class TruncatedReadError(EOFError):
    """The stream ended before the requested number of bytes."""


class ByteReader:
    """Cursor over a binary stream with typed little-endian reads.

    Attributes:
        stream: Underlying binary stream.
        offset: Number of bytes consumed so far.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self.stream = stream
        self.offset = 0
        start = stream.tell()
        self._end = stream.seek(0, os.SEEK_END)
        stream.seek(start)

    def remaining(self) -> int:
        """Bytes left between the cursor and the end of the stream."""
        return self._end - self.stream.tell()

    def _check_length(self, n: int) -> None:
        if n < 0 or n > self.remaining():
            raise TruncatedReadError(
                f"length {n} at offset {self.offset} exceeds the "
                f"{self.remaining()} bytes left"
            )

    def read_bytes(self, n: int) -> bytes:
        """Read exactly ``n`` bytes.

        Lengths are checked against the stream size before reading, so a
        corrupt length prefix never triggers a huge allocation.

        Raises:
            TruncatedReadError: If fewer than ``n`` bytes are available.
        """
        self._check_length(n)
        data = self.stream.read(n)
        if len(data) != n:
            raise TruncatedReadError(
                f"expected {n} bytes at offset {self.offset}, got {len(data)}"
            )
        self.offset += n
        return data

    def _unpack(self, fmt: str, size: int) -> Any:
        return struct.unpack(fmt, self.read_bytes(size))[0]

    def read_u8(self) -> int:
        return self._unpack("<B", 1)

    def read_u32(self) -> int:
        return self._unpack("<I", 4)

    def read_i32(self) -> int:
        return self._unpack("<i", 4)

    def read_u64(self) -> int:
        return self._unpack("<Q", 8)

    def read_f32(self) -> float:
        return self._unpack("<f", 4)

    def read_bool(self) -> bool:
        return self.read_u8() != 0

    def read_string(self, max_length: Optional[int] = None) -> str:
        """Read a u64 length-prefixed UTF-8 string.

        Args:
            max_length: Reject strings longer than this many bytes.

        Raises:
            ValueError: If the string is too long or not valid UTF-8.
            TruncatedReadError: If the stream ends early.
        """
        length = self.read_u64()
        if max_length is not None and length > max_length:
            raise ValueError(f"string too long: {length} bytes (max: {max_length})")
        return self.read_bytes(length).decode("utf-8")

    def skip(self, n: int) -> None:
        """Advance the cursor by ``n`` bytes.

        Raises:
            TruncatedReadError: If fewer than ``n`` bytes are available.
        """
        if n == 0:
            return
        self._check_length(n)
        self.stream.seek(n, os.SEEK_CUR)
        self.offset += n


def read_value(reader: ByteReader, value_type: int) -> Any:
    """Read one metadata value of the given type.

    Scalar types 0, 4, 5, 6, 7, 8 and 10 are decoded. Arrays are skipped
    and returned as ARRAY_MARKER. Other types map to None; their bytes are
    skipped when the width is known.
    """
    if value_type == GGUF_TYPE_UINT8:
        return reader.read_u8()
    if value_type == GGUF_TYPE_UINT32:
        return reader.read_u32()
    if value_type == GGUF_TYPE_INT32:
        return reader.read_i32()
    if value_type == GGUF_TYPE_FLOAT32:
        return reader.read_f32()
    if value_type == GGUF_TYPE_BOOL:
        return reader.read_bool()
    if value_type == GGUF_TYPE_STRING:
        return reader.read_string()
    if value_type == GGUF_TYPE_UINT64:
        return reader.read_u64()
    if value_type == GGUF_TYPE_ARRAY:
        skip_array(reader)
        return ARRAY_MARKER

    width = FIXED_WIDTHS.get(value_type)
    if width is not None:
        reader.skip(width)
    return None


def skip_array(reader: ByteReader) -> None:
    """Skip an array value (element type, count and elements).

    Raises:
        ValueError: If the element type has no known encoding.
    """
    element_type = reader.read_u32()
    count = reader.read_u64()

    width = FIXED_WIDTHS.get(element_type)
    if width is not None:
        reader.skip(width * count)
    elif element_type == GGUF_TYPE_STRING:
        for _ in range(count):
            reader.skip(reader.read_u64())
    elif element_type == GGUF_TYPE_ARRAY:
        for _ in range(count):
            skip_array(reader)
    else:
        raise ValueError(f"cannot skip array of unknown type {element_type}")


def read_model_metadata(
    path: str,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    max_key_length: int = DEFAULT_MAX_KEY_LENGTH,
) -> Dict[str, Any]:
    """Read the header and metadata key/value pairs of a GGUF file.

    A failure on the header is fatal. A failure while reading an individual
    key/value pair stops reading and returns the pairs read so far.

    Args:
        path: Path to the GGUF file.
        max_entries: Maximum number of key/value pairs to read.
        max_key_length: Longest accepted key, in bytes.

    Returns:
        Dictionary with ``gguf_version``, ``tensor_count``, ``kv_count``,
        every key/value pair read and ``file_size_gb``.

    Raises:
        ModelFileNotFoundError: If the file does not exist.
        InvalidFormatError: If the file is not a GGUF file or the header is
            truncated.
    """
    if not os.path.exists(path):
        raise ModelFileNotFoundError(path)

    metadata: Dict[str, Any] = {}

    try:
        with open(path, "rb") as f:
            reader = ByteReader(f)

            try:
                magic = reader.read_bytes(4)
            except TruncatedReadError as e:
                raise InvalidFormatError(f"Cannot read GGUF magic: {e}") from e
            if magic != GGUF_MAGIC:
                raise InvalidFormatError(
                    f"Invalid GGUF file (bad magic bytes {magic!r}): {path}"
                )

            try:
                version = reader.read_u32()
                tensor_count = reader.read_u64()
                kv_count = reader.read_u64()
            except TruncatedReadError as e:
                raise InvalidFormatError(f"Truncated GGUF header: {e}") from e

            metadata["gguf_version"] = version
            metadata["tensor_count"] = tensor_count
            metadata["kv_count"] = kv_count

            for index in range(min(kv_count, max_entries)):
                try:
                    key = reader.read_string(max_length=max_key_length)
                    value_type = reader.read_u32()
                    value = read_value(reader, value_type)
                except (TruncatedReadError, ValueError, OverflowError, OSError) as e:
                    logger.warning(f"Stopped reading GGUF metadata at entry {index} of {path}: {e}")
                    break
                metadata[key] = value
    except OSError as e:
        raise InvalidFormatError(f"Cannot read GGUF file {path}: {e}") from e

    metadata["file_size_gb"] = os.path.getsize(path) / 1_073_741_824
    logger.info(f"Read {len(metadata) - 4} GGUF metadata entries from {path}")
    return metadata
