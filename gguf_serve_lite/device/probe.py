"""
Compute capability detection.

The capability is probed once per process: CUDA first, then Apple Metal
(torch MPS), otherwise CPU. Setting ``GGUF_SERVE_FORCE_CPU=1`` makes the
process behave like a CPU-only build.
"""

import functools
import logging
import os
from enum import Enum

import torch

logger = logging.getLogger(__name__)

FORCE_CPU_ENV = "GGUF_SERVE_FORCE_CPU"


class Capability(Enum):
    """Compute backend available to the process."""

    CUDA = "cuda"
    METAL = "metal"
    CPU = "cpu"

    @property
    def has_gpu(self) -> bool:
        return self is not Capability.CPU

    @property
    def torch_device(self) -> str:
        """Device string torch uses for this capability."""
        if self is Capability.CUDA:
            return "cuda"
        if self is Capability.METAL:
            return "mps"
        return "cpu"

    @property
    def display_name(self) -> str:
        return {"cuda": "CUDA", "metal": "Metal", "cpu": "CPU"}[self.value]


def _force_cpu_requested() -> bool:
    return os.environ.get(FORCE_CPU_ENV, "").strip().lower() in ("1", "true", "yes", "on")


@functools.lru_cache(maxsize=None)
def probe_capability() -> Capability:
    """Determine the compute capability of this process (cached)."""
    if _force_cpu_requested():
        capability = Capability.CPU
    elif torch.cuda.is_available():
        capability = Capability.CUDA
    elif getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available():
        capability = Capability.METAL
    else:
        capability = Capability.CPU

    logger.info(f"Compute capability: {capability.display_name}")
    return capability


def clamp_gpu_layers(requested: int, capability: Capability) -> int:
    """Clamp a requested GPU layer count to what the capability supports.

    Without a GPU every request is forced to 0; negative requests become 0.
    """
    if not capability.has_gpu:
        if requested > 0:
            logger.info(f"No GPU backend available, forcing CPU-only (requested GPU layers: {requested})")
        return 0
    return max(requested, 0)
