"""
Sampling strategies for text generation.

This module turns the per-token scores of one decode step into a concrete
next token. Scores are first adjusted by a repetition penalty over a window
of recent tokens, then either the best token is picked directly (greedy) or
one is drawn from the temperature-scaled softmax distribution.
"""

import torch
from dataclasses import dataclass
from typing import Optional, Sequence, List


@dataclass
class SamplingParams:
    """Parameters for sampling strategies.

    Temperatures of exactly 0 and 1 both select greedily.
    """
    temperature: float = 0.7
    repetition_penalty: float = 1.15
    penalty_last_n: int = 64
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.temperature < 0.0:
            raise ValueError(f"temperature must be non-negative, got {self.temperature}")
        if self.repetition_penalty <= 0.0:
            raise ValueError(
                f"repetition_penalty must be positive, got {self.repetition_penalty}"
            )
        if self.penalty_last_n < 0:
            raise ValueError(f"penalty_last_n must be non-negative, got {self.penalty_last_n}")

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0.0 or self.temperature == 1.0


def recent_window(
    prompt_tokens: Sequence[int], generated_tokens: Sequence[int], last_n: int
) -> List[int]:
    """Last ``last_n`` tokens of the combined prompt + generated history."""
    if last_n <= 0:
        return []
    history = list(prompt_tokens) + list(generated_tokens)
    return history[-last_n:]


def apply_repetition_penalty(
    logits: torch.Tensor, recent_tokens: Sequence[int], penalty: float
) -> torch.Tensor:
    """Apply repetition penalty.

    Every distinct token in ``recent_tokens`` is adjusted once: scores <= 0
    are multiplied by ``penalty``, positive scores are divided by it.
    ``logits`` is never modified in place.
    """
    if penalty == 1.0 or not recent_tokens:
        return logits

    vocab_size = logits.shape[-1]
    ids = sorted({t for t in recent_tokens if 0 <= t < vocab_size})
    if not ids:
        return logits

    index = torch.tensor(ids, dtype=torch.long, device=logits.device)
    adjusted = logits.clone()
    selected = adjusted[index]
    adjusted[index] = torch.where(selected <= 0, selected * penalty, selected / penalty)
    return adjusted


def greedy_sampling(logits: torch.Tensor) -> int:
    """Greedy sampling (argmax, first index on ties)."""
    return int(torch.argmax(logits, dim=-1).item())


def temperature_scaling(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Apply temperature scaling."""
    return logits / temperature


def softmax_probabilities(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Temperature-scaled softmax with the running maximum subtracted."""
    scaled = temperature_scaling(logits.to(torch.float32), temperature)
    exps = torch.exp(scaled - scaled.max())
    return exps / exps.sum()


def categorical_sampling(
    probs: torch.Tensor, generator: Optional[torch.Generator] = None
) -> int:
    """Draw one index by walking the cumulative distribution.

    The first index whose cumulative probability reaches the uniform draw
    is returned. If rounding leaves the total below the draw, the last
    index is returned.
    """
    draw = torch.rand((), generator=generator, dtype=probs.dtype, device=probs.device)
    cumulative = torch.cumsum(probs, dim=-1)
    index = int(torch.searchsorted(cumulative, draw.reshape(1)).item())
    return min(index, probs.shape[-1] - 1)


class Sampler:
    """Selects the next token for one generation request.

    Args:
        params: Sampling parameters. A seed makes temperature sampling
            reproducible for the lifetime of the sampler.
    """

    def __init__(self, params: Optional[SamplingParams] = None):
        self.params = params or SamplingParams()
        self.generator: Optional[torch.Generator] = None
        if self.params.seed is not None:
            self.generator = torch.Generator()
            self.generator.manual_seed(self.params.seed)

    def adjust(self, logits: torch.Tensor, recent_tokens: Sequence[int]) -> torch.Tensor:
        """Scores after the repetition penalty."""
        return apply_repetition_penalty(
            logits.to(torch.float32), recent_tokens, self.params.repetition_penalty
        )

    def sample(self, logits: torch.Tensor, recent_tokens: Sequence[int] = ()) -> int:
        """Sample the next token id.

        Args:
            logits: 1-D scores over the vocabulary.
            recent_tokens: Penalty window (see recent_window).

        Returns:
            Selected token id. End-of-generation is not checked here.
        """
        adjusted = self.adjust(logits.cpu(), recent_tokens)

        if self.params.is_greedy:
            return greedy_sampling(adjusted)

        probs = softmax_probabilities(adjusted, self.params.temperature)
        return categorical_sampling(probs, self.generator)


def sample(
    logits: torch.Tensor,
    params: SamplingParams,
    recent_tokens: Sequence[int] = (),
) -> int:
    """Sample next token using specified parameters."""
    return Sampler(params).sample(logits, recent_tokens)
