"""
Token sampling strategies and generation control.

Provides:
- SamplingParams: Sampling configuration dataclass
- Sampler: Main sampler class
- Sampling strategies: Greedy, temperature (softmax + categorical draw)
- Penalties: Windowed repetition penalty
"""

from gguf_serve_lite.sampling.sampling import (
    Sampler,
    SamplingParams,
    apply_repetition_penalty,
    categorical_sampling,
    greedy_sampling,
    recent_window,
    sample,
    softmax_probabilities,
)

__all__ = [
    "Sampler",
    "SamplingParams",
    "apply_repetition_penalty",
    "categorical_sampling",
    "greedy_sampling",
    "recent_window",
    "sample",
    "softmax_probabilities",
]
