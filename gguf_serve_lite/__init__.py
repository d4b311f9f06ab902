"""
gguf_serve_lite: A lightweight local inference engine for GGUF models.

This package provides:
- A model pool keyed by resolved path with GPU-then-CPU load fallback
- Split GGUF shard resolution
- Chunked prefill and a sampled decode loop with repetition penalty
- Blocking, streaming and async generation
- GGUF header metadata reading and heuristic memory estimates
"""

__version__ = "0.1.0"
__author__ = "gguf-serve-lite contributors"

from gguf_serve_lite.core.config import EngineConfig
from gguf_serve_lite.core.errors import EngineError
from gguf_serve_lite.core.inference_engine import InferenceEngine

__all__ = ["EngineConfig", "EngineError", "InferenceEngine"]
