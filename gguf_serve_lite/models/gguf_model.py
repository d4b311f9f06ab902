"""
Loaded GGUF model and its per-request decode workspace.

GGUFModel wraps a transformers causal LM and tokenizer loaded from a GGUF
file. The decoder body and the output head are driven separately so that
prefill chunks which do not need logits never run the vocabulary
projection.
"""

import logging
from typing import Any, List, Optional, Set

import torch

from gguf_serve_lite.core.errors import DecodeError, TokenizationError
from gguf_serve_lite.models.detokenizer import IncrementalDetokenizer

logger = logging.getLogger(__name__)

# Chat-template markers that end a turn in common GGUF vocabularies
END_OF_TURN_MARKERS = ("<|im_end|>", "<|eot_id|>", "<|endoftext|>", "<|end|>", "<end_of_turn>")


class DecodeContext:
    """KV workspace for one generation request.

    Args:
        model: Owning GGUFModel.
        n_ctx: Maximum number of positions the workspace can hold.
        n_batch: Maximum number of tokens per decode call.
    """

    def __init__(self, model: "GGUFModel", n_ctx: int, n_batch: int):
        self.model = model
        self.n_ctx = n_ctx
        self.n_batch = n_batch
        self.n_past = 0
        self._cache: Any = None
        self._logits: Optional[torch.Tensor] = None

    def decode(self, token_ids: List[int], start_pos: int, want_logits: bool) -> None:
        """Run one forward pass over ``token_ids``.

        Args:
            token_ids: Tokens occupying positions start_pos.. in order.
            start_pos: Position of the first token; must equal n_past.
            want_logits: Compute logits for the last token of this batch.

        Raises:
            DecodeError: If the batch is empty, too large, not contiguous,
                overflows the workspace or the forward pass fails.
        """
        n = len(token_ids)
        if n == 0:
            raise DecodeError("Cannot decode an empty batch")
        if n > self.n_batch:
            raise DecodeError(f"Batch of {n} tokens exceeds n_batch={self.n_batch}")
        if start_pos != self.n_past:
            raise DecodeError(
                f"Non-contiguous decode: start_pos={start_pos}, expected {self.n_past}"
            )
        if start_pos + n > self.n_ctx:
            raise DecodeError(
                f"KV cache exhausted: {start_pos + n} positions > n_ctx={self.n_ctx}"
            )

        input_ids = torch.tensor([token_ids], dtype=torch.long, device=self.model.input_device)
        try:
            with torch.inference_mode():
                outputs = self.model.decoder(
                    input_ids=input_ids,
                    past_key_values=self._cache,
                    use_cache=True,
                )
                self._cache = outputs.past_key_values
                if want_logits:
                    hidden = outputs.last_hidden_state[:, -1:, :]
                    self._logits = self.model.lm_head(hidden)[0, -1].float().cpu()
        except Exception as e:
            raise DecodeError(f"Decode failed at position {start_pos}: {e}") from e

        self.n_past += n

    def logits(self) -> torch.Tensor:
        """Scores over the vocabulary for the last token that requested them."""
        if self._logits is None:
            raise DecodeError("No logits available; decode with want_logits=True first")
        return self._logits


class GGUFModel:
    """A causal LM loaded from a GGUF file.

    Attributes:
        model: transformers causal LM.
        tokenizer: transformers tokenizer built from the GGUF vocabulary.
        path: File the model was loaded from.
        gpu_layers: Number of decoder blocks placed on the accelerator.
    """

    def __init__(self, model: Any, tokenizer: Any, path: str, gpu_layers: int = 0):
        self.model = model
        self.tokenizer = tokenizer
        self.path = path
        self.gpu_layers = gpu_layers
        self.decoder = model.base_model
        self.lm_head = model.get_output_embeddings()
        self._eog_ids = self._collect_eog_ids()

    @property
    def num_layers(self) -> int:
        return int(self.model.config.num_hidden_layers)

    @property
    def hidden_size(self) -> int:
        return int(self.model.config.hidden_size)

    @property
    def parameter_count(self) -> int:
        return sum(p.numel() for p in self.model.parameters())

    @property
    def input_device(self) -> torch.device:
        return self.model.get_input_embeddings().weight.device

    def _collect_eog_ids(self) -> Set[int]:
        ids: Set[int] = set()

        candidates = [self.tokenizer.eos_token_id]
        generation_config = getattr(self.model, "generation_config", None)
        if generation_config is not None:
            candidates.append(generation_config.eos_token_id)

        for candidate in candidates:
            if isinstance(candidate, int):
                ids.add(candidate)
            elif isinstance(candidate, (list, tuple)):
                ids.update(c for c in candidate if isinstance(c, int))

        vocab = self.tokenizer.get_vocab()
        for marker in END_OF_TURN_MARKERS:
            if marker in vocab:
                ids.add(vocab[marker])

        return ids

    def tokenize(self, text: str, add_bos: bool = True) -> List[int]:
        """Tokenize text, prepending BOS when the vocabulary has one.

        Raises:
            TokenizationError: If the tokenizer fails.
        """
        try:
            ids = list(self.tokenizer.encode(text, add_special_tokens=False))
        except Exception as e:
            raise TokenizationError(f"Tokenization failed: {e}") from e

        bos = self.tokenizer.bos_token_id
        if add_bos and bos is not None and (not ids or ids[0] != bos):
            ids.insert(0, bos)
        return ids

    def is_eog(self, token_id: int) -> bool:
        """Check if a token ends generation."""
        return token_id in self._eog_ids

    def new_context(self, n_ctx: int, n_batch: int) -> DecodeContext:
        return DecodeContext(self, n_ctx, n_batch)

    def detokenizer(self) -> IncrementalDetokenizer:
        return IncrementalDetokenizer(self.tokenizer)
