"""
Split GGUF file handling.

Large GGUF models are distributed as several files named
``<stem>-00002-of-00004.gguf`` (any extension is accepted). A split model
is always addressed by its first shard.
"""

import logging
import os
import re
from typing import List

logger = logging.getLogger(__name__)

SHARD_PATTERN = re.compile(r"-(\d{5})-of-(\d{5})(\.\w+)$")


def is_shard_path(path: str) -> bool:
    """Check whether the file name carries a shard index suffix."""
    return SHARD_PATTERN.search(path) is not None


def _shard_name(path: str, index: int, total: str) -> str:
    return SHARD_PATTERN.sub(
        lambda match: f"-{index:05d}-of-{total}{match.group(3)}", path
    )


def shard_paths(path: str) -> List[str]:
    """Return the paths of every shard in the set ``path`` belongs to.

    Args:
        path: Path to any shard of the set.

    Returns:
        Paths of shards 1..total, or ``[path]`` for a single-file model.
    """
    match = SHARD_PATTERN.search(path)
    if match is None:
        return [path]

    total = match.group(2)
    return [_shard_name(path, i, total) for i in range(1, int(total) + 1)]


def missing_shards(path: str) -> List[str]:
    """Return the shard paths of the set that do not exist on disk."""
    return [part for part in shard_paths(path) if not os.path.exists(part)]


def resolve_shard_path(path: str) -> str:
    """Map a path naming any shard of a split model to its first shard.

    Non-split paths and first-shard paths are returned unchanged. Missing
    shards are logged as warnings but do not fail resolution.

    Args:
        path: Model file path.

    Returns:
        Path of the first shard, or the input path.
    """
    match = SHARD_PATTERN.search(path)
    if match is None:
        return path

    resolved = _shard_name(path, 1, match.group(2))
    if resolved != path:
        logger.info(f"Split GGUF detected, redirecting {path} -> {resolved}")

    for part in missing_shards(path):
        logger.warning(f"Missing split part: {part}")

    return resolved
