"""ChunkManager for handling chunked prefill of long prompts."""

from dataclasses import dataclass
from typing import List, Sequence


@dataclass(frozen=True)
class PrefillChunk:
    """One forward pass worth of prompt tokens.

    Attributes:
        token_ids: Tokens of this chunk.
        start_pos: Position of the first token in the sequence.
        want_logits: True only for the chunk holding the last prompt token;
            logits are produced for that token alone.
    """
    token_ids: List[int]
    start_pos: int
    want_logits: bool

    @property
    def end_pos(self) -> int:
        return self.start_pos + len(self.token_ids)

    def __len__(self) -> int:
        return len(self.token_ids)


class ChunkManager:
    """Plans chunked prefill for long prompts.

    Splits a prompt into consecutive chunks of at most ``chunk_size`` tokens
    so that each forward pass has bounded memory use. Feeding the chunks in
    order produces the same KV cache and final logits as one pass over the
    whole prompt.

    Args:
        chunk_size: Maximum tokens per chunk (default: 8192)
    """

    def __init__(self, chunk_size: int = 8192):
        """Initialize ChunkManager.

        Args:
            chunk_size: Maximum tokens per chunk (default: 8192)

        Raises:
            ValueError: If chunk_size is zero or negative
        """
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")

        self.chunk_size = chunk_size

    def plan(self, token_ids: Sequence[int]) -> List[PrefillChunk]:
        """Split prompt tokens into prefill chunks.

        Args:
            token_ids: Full prompt token sequence

        Returns:
            Chunks in processing order; empty for an empty prompt
        """
        seq_len = len(token_ids)
        chunks = []

        for start in range(0, seq_len, self.chunk_size):
            end = min(start + self.chunk_size, seq_len)
            chunks.append(
                PrefillChunk(
                    token_ids=list(token_ids[start:end]),
                    start_pos=start,
                    want_logits=end == seq_len,
                )
            )

        return chunks
