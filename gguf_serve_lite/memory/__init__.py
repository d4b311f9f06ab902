"""
Model residency and memory accounting.

Provides:
- ModelPool: Loaded models keyed by resolved path, sharing one backend
- ModelDescriptor / LoadedModel: Load request and pool entry
- LoadAttempt / LoadPhase: GPU-then-CPU load state machine
- MemoryEstimate / estimate_memory: Heuristic memory usage report
"""

from gguf_serve_lite.memory.estimator import MemoryEstimate, estimate_memory
from gguf_serve_lite.memory.model_pool import (
    LoadAttempt,
    LoadedModel,
    LoadPhase,
    ModelDescriptor,
    ModelPool,
)

__all__ = [
    "MemoryEstimate",
    "estimate_memory",
    "LoadAttempt",
    "LoadedModel",
    "LoadPhase",
    "ModelDescriptor",
    "ModelPool",
]
