"""
Incremental detokenization.

Byte-level BPE vocabularies split multi-byte characters across tokens, so
decoding tokens one at a time can yield partial characters. The
detokenizer re-decodes a short trailing window and only emits text once it
no longer ends in an incomplete character.
"""

from typing import Any, List

from gguf_serve_lite.core.errors import DetokenizationError

REPLACEMENT_CHAR = "\ufffd"


class IncrementalDetokenizer:
    """Converts a stream of token ids into text pieces.

    Args:
        tokenizer: Any tokenizer exposing ``decode(ids, skip_special_tokens=...)``.
    """

    def __init__(self, tokenizer: Any):
        self.tokenizer = tokenizer
        self.token_ids: List[int] = []
        self._prefix_offset = 0
        self._read_offset = 0

    def _decode(self, ids: List[int]) -> str:
        return self.tokenizer.decode(ids, skip_special_tokens=False)

    def push(self, token_id: int) -> str:
        """Add one token and return the newly completed text.

        Returns an empty string while a character is still incomplete.

        Raises:
            DetokenizationError: If the tokenizer cannot decode the token.
                The token is not recorded.
        """
        ids = self.token_ids + [token_id]
        try:
            prefix_text = self._decode(ids[self._prefix_offset:self._read_offset])
            new_text = self._decode(ids[self._prefix_offset:])
        except Exception as e:
            raise DetokenizationError(token_id, str(e)) from e

        self.token_ids = ids
        if len(new_text) > len(prefix_text) and not new_text.endswith(REPLACEMENT_CHAR):
            self._prefix_offset = self._read_offset
            self._read_offset = len(ids)
            return new_text[len(prefix_text):]
        return ""

    def flush(self) -> str:
        """Return text still held back, even if it ends mid-character."""
        if self._read_offset >= len(self.token_ids):
            return ""

        try:
            prefix_text = self._decode(self.token_ids[self._prefix_offset:self._read_offset])
            new_text = self._decode(self.token_ids[self._prefix_offset:])
        except Exception as e:
            raise DetokenizationError(self.token_ids[-1], str(e)) from e

        self._prefix_offset = self._read_offset = len(self.token_ids)
        return new_text[len(prefix_text):]
