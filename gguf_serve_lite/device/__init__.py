"""
Device capability probing and backend lifecycle.

Provides:
- Capability: CUDA / Metal / CPU enum
- probe_capability: Once-per-process capability detection
- clamp_gpu_layers: GPU layer safety clamp
- BackendHandle: Shared runtime initialization
"""

from gguf_serve_lite.device.backend import BackendHandle
from gguf_serve_lite.device.probe import Capability, clamp_gpu_layers, probe_capability

__all__ = ["BackendHandle", "Capability", "clamp_gpu_layers", "probe_capability"]
