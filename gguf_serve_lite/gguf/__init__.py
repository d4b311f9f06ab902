"""
GGUF file helpers.

Provides:
- read_model_metadata: Header and key/value metadata reader
- ByteReader: Typed little-endian cursor over a byte stream
- resolve_shard_path: Split-model first shard resolution
"""

from gguf_serve_lite.gguf.reader import ARRAY_MARKER, ByteReader, read_model_metadata
from gguf_serve_lite.gguf.shards import is_shard_path, resolve_shard_path, shard_paths

__all__ = [
    "ARRAY_MARKER",
    "ByteReader",
    "read_model_metadata",
    "is_shard_path",
    "resolve_shard_path",
    "shard_paths",
]
