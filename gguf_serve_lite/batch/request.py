"""
Request and generation state dataclasses.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from gguf_serve_lite.sampling.sampling import SamplingParams


class RequestState(Enum):
    """State of a generation request."""

    WAITING = "waiting"  # Request has been created, nothing processed yet
    PREFILLING = "prefilling"  # Prompt is being fed through the model
    DECODING = "decoding"  # Request is generating tokens
    COMPLETED = "completed"  # Request has finished generation
    CANCELLED = "cancelled"  # Caller stopped the request early


@dataclass(frozen=True)
class InferenceRequest:
    """A single text generation call.

    Attributes:
        model_key: Pool key (resolved path) of the model to run.
        prompt: Prompt text.
        max_output_tokens: Maximum number of tokens to generate.
        temperature: Sampling temperature (0 and 1 select greedily).
        seed: Optional seed for reproducible temperature sampling.
    """

    model_key: str
    prompt: str
    max_output_tokens: int
    temperature: float = 0.7
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_output_tokens < 0:
            raise ValueError(
                f"max_output_tokens must be non-negative, got {self.max_output_tokens}"
            )
        if self.temperature < 0.0:
            raise ValueError(f"temperature must be non-negative, got {self.temperature}")

    def sampling_params(
        self, repetition_penalty: float = 1.15, penalty_last_n: int = 64
    ) -> SamplingParams:
        return SamplingParams(
            temperature=self.temperature,
            repetition_penalty=repetition_penalty,
            penalty_last_n=penalty_last_n,
            seed=self.seed,
        )


@dataclass
class GenerationState:
    """Mutable state of one decode loop.

    Attributes:
        prompt_tokens: Tokenized prompt (including BOS).
        generated_tokens: Tokens produced so far (EOS excluded).
        cursor: Position of the next token fed to the model.
        state: Current state of the request.
    """

    prompt_tokens: List[int]
    generated_tokens: List[int] = field(default_factory=list)
    cursor: int = 0
    state: RequestState = RequestState.WAITING

    def advance(self, token_id: int) -> None:
        """Record a generated token; the cursor moves past it."""
        self.generated_tokens.append(token_id)
        self.cursor += 1

    @property
    def num_generated(self) -> int:
        return len(self.generated_tokens)


@dataclass(frozen=True)
class TokenEvent:
    """One streaming event.

    Token events carry the text piece of a single generated token
    (possibly empty while a multi-byte character is incomplete). The final
    event has ``is_complete`` set and carries the full cleaned ``text``.
    """

    index: int
    token: str = ""
    token_id: Optional[int] = None
    is_complete: bool = False
    text: Optional[str] = None
    finish_reason: Optional[str] = None


@dataclass
class GenerationResult:
    """Outcome of a finished generation.

    Attributes:
        text: Cleaned generated text.
        prompt_tokens: Number of prompt tokens.
        generated_tokens: Generated token ids (EOS excluded).
        finish_reason: "eos", "length" or "cancelled".
        decode_errors: Number of tokens that could not be detokenized.
    """

    text: str
    prompt_tokens: int
    generated_tokens: List[int]
    finish_reason: str
    decode_errors: int = 0
