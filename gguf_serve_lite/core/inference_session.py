"""
Single-request generation against a loaded model.

An InferenceSession owns the per-request KV workspace: it tokenizes the
prompt, prefills it in bounded chunks, then samples one token per step
until an end-of-generation token or the output limit. Streaming and
non-streaming generation share the same loop.
"""

import logging
import threading
import time
from typing import Iterable, Iterator, List, Optional

from gguf_serve_lite.batch import (
    ChunkManager,
    GenerationResult,
    GenerationState,
    InferenceRequest,
    RequestState,
    TokenEvent,
)
from gguf_serve_lite.core.config import EngineConfig
from gguf_serve_lite.core.errors import (
    DetokenizationError,
    PromptTooLongError,
    TokenizationError,
)
from gguf_serve_lite.memory.model_pool import LoadedModel
from gguf_serve_lite.sampling import Sampler, recent_window

logger = logging.getLogger(__name__)


def kv_cache_size(context_length: int, max_output_tokens: int, floor: int = 4096) -> int:
    """Workspace size holding the prompt plus every generated token."""
    return max(context_length + max_output_tokens, floor)


def strip_markers(text: str, markers: Iterable[str]) -> str:
    """Remove role/control markers and trim surrounding whitespace."""
    for marker in markers:
        text = text.replace(marker, "")
    return text.strip()


class InferenceSession:
    """Runs one InferenceRequest to completion.

    Args:
        model: Pool entry to generate with. The handle is captured here, so
            replacing the pool entry does not affect a running session.
        request: Prompt and generation limits.
        config: Engine configuration.
        cancel_event: Optional event; when set, generation stops at the next
            chunk or step boundary with finish_reason "cancelled".
    """

    def __init__(
        self,
        model: LoadedModel,
        request: InferenceRequest,
        config: Optional[EngineConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.model = model
        self.handle = model.handle
        self.request = request
        self.config = config or EngineConfig()
        self.cancel_event = cancel_event
        self.sampler = Sampler(
            request.sampling_params(self.config.repetition_penalty, self.config.penalty_last_n)
        )
        self.result: Optional[GenerationResult] = None

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _tokenize(self) -> List[int]:
        tokens = self.handle.tokenize(self.request.prompt, add_bos=True)
        if not tokens:
            raise TokenizationError("Prompt produced no tokens")

        if len(tokens) > self.model.context_length:
            raise PromptTooLongError(len(tokens), self.model.context_length)
        return tokens

    def stream(self) -> Iterator[TokenEvent]:
        """Generate, yielding one event per token then a completion event.

        Raises:
            TokenizationError: Prompt could not be tokenized.
            PromptTooLongError: Prompt exceeds the model's context length.
            DecodeError: A forward pass failed.
        """
        start_time = time.time()
        state = GenerationState(prompt_tokens=self._tokenize())
        num_prompt = len(state.prompt_tokens)

        n_ctx = kv_cache_size(
            self.model.context_length,
            self.request.max_output_tokens,
            self.config.min_kv_cache_tokens,
        )
        n_batch = self.config.chunk_size
        context = self.handle.new_context(n_ctx, n_batch)
        logger.info(f"Context: n_ctx={n_ctx}, n_batch={n_batch}, prompt_tokens={num_prompt}")

        finish_reason = "length"
        state.state = RequestState.PREFILLING
        chunks = ChunkManager(n_batch).plan(state.prompt_tokens)
        for chunk in chunks:
            if self._cancelled():
                finish_reason = "cancelled"
                break
            context.decode(chunk.token_ids, chunk.start_pos, chunk.want_logits)
        else:
            logger.info(f"Prefill done: {num_prompt} tokens in {len(chunks)} chunk(s)")

        state.cursor = num_prompt
        detokenizer = self.handle.detokenizer()
        pieces: List[str] = []
        decode_errors = 0

        if finish_reason != "cancelled":
            state.state = RequestState.DECODING
            max_tokens = self.request.max_output_tokens
            while state.num_generated < max_tokens:
                if self._cancelled():
                    finish_reason = "cancelled"
                    break

                recent = recent_window(
                    state.prompt_tokens, state.generated_tokens, self.config.penalty_last_n
                )
                token_id = self.sampler.sample(context.logits(), recent)
                if self.handle.is_eog(token_id):
                    finish_reason = "eos"
                    break

                position = state.cursor
                state.advance(token_id)

                try:
                    piece = detokenizer.push(token_id)
                except DetokenizationError as e:
                    logger.debug(str(e))
                    decode_errors += 1
                    piece = ""
                pieces.append(piece)
                yield TokenEvent(index=state.num_generated - 1, token=piece, token_id=token_id)

                if state.num_generated < max_tokens:
                    context.decode([token_id], position, want_logits=True)

        try:
            pieces.append(detokenizer.flush())
        except DetokenizationError as e:
            logger.debug(str(e))
            decode_errors += 1

        if decode_errors:
            logger.warning(f"{decode_errors} token(s) could not be detokenized and were skipped")

        text = strip_markers("".join(pieces), self.config.strip_markers)
        state.state = (
            RequestState.CANCELLED if finish_reason == "cancelled" else RequestState.COMPLETED
        )
        self.result = GenerationResult(
            text=text,
            prompt_tokens=num_prompt,
            generated_tokens=list(state.generated_tokens),
            finish_reason=finish_reason,
            decode_errors=decode_errors,
        )

        elapsed = time.time() - start_time
        logger.info(
            f"Generated {state.num_generated} tokens in {elapsed:.2f}s (finish_reason={finish_reason})"
        )
        yield TokenEvent(
            index=state.num_generated,
            is_complete=True,
            text=text,
            finish_reason=finish_reason,
        )

    def run(self) -> GenerationResult:
        """Generate to completion and return the result."""
        for _ in self.stream():
            pass
        return self.result
