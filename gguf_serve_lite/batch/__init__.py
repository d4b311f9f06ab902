"""
Request bookkeeping and prefill batching.

Provides:
- InferenceRequest: Individual generation request
- GenerationState: Decode loop state
- RequestState: Request state enum
- TokenEvent / GenerationResult: Streaming events and final results
- ChunkManager: Chunked prefill for long prompts
"""

from gguf_serve_lite.batch.request import (
    GenerationResult,
    GenerationState,
    InferenceRequest,
    RequestState,
    TokenEvent,
)
from gguf_serve_lite.batch.chunk_manager import ChunkManager, PrefillChunk

__all__ = [
    "GenerationResult",
    "GenerationState",
    "InferenceRequest",
    "RequestState",
    "TokenEvent",
    "ChunkManager",
    "PrefillChunk",
]
