"""
Heuristic memory estimate for display.

This is not hardware telemetry. Device memory is probed with the vendor
tool when possible and otherwise derived from system RAM; model size comes
from a per-parameter-class constant and the KV cache size from the model
shape.
"""

import logging
import subprocess
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

import psutil

from gguf_serve_lite.device.probe import Capability

logger = logging.getLogger(__name__)

BYTES_PER_GIB = 1024 ** 3

NVIDIA_SMI_COMMAND = ["nvidia-smi", "--query-gpu=memory.total", "--format=csv,noheader,nounits"]
NVIDIA_SMI_TIMEOUT = 5.0

UNIFIED_MEMORY_FRACTION = 0.75
GPU_FALLBACK_FRACTION = 0.5
GPU_FALLBACK_MIN_GB = 4.0
CPU_MEMORY_FRACTION = 0.7
UNKNOWN_SYSTEM_MEMORY_GB = 8.0

# Approximate Q4 file sizes: (max parameter count, size in GB)
PARAMETER_CLASS_SIZES_GB = (
    (2e9, 1.1),
    (4.5e9, 2.4),
    (9e9, 4.2),
    (15e9, 8.0),
    (40e9, 19.0),
    (80e9, 40.0),
)
DEFAULT_MODEL_SIZE_GB = 4.2

DEFAULT_HIDDEN_SIZE = 4096
DEFAULT_MAX_LAYERS = 28
KV_BYTES_PER_ELEMENT = 2


@dataclass
class MemoryEstimate:
    available: bool
    total_gb: float
    used_gb: float
    free_gb: float
    usage_percent: float
    model_size_gb: float
    kv_cache_size_gb: float

    @classmethod
    def unavailable(cls) -> "MemoryEstimate":
        return cls(False, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def system_memory_gb() -> Optional[float]:
    """Total system RAM in GiB, None if it cannot be read."""
    try:
        return psutil.virtual_memory().total / BYTES_PER_GIB
    except (OSError, RuntimeError) as e:
        logger.warning(f"Could not read system memory: {e}")
        return None


def nvidia_total_memory_gb() -> Optional[float]:
    """Total memory of the first NVIDIA GPU in GiB, None without nvidia-smi."""
    try:
        result = subprocess.run(
            NVIDIA_SMI_COMMAND,
            capture_output=True,
            text=True,
            timeout=NVIDIA_SMI_TIMEOUT,
            check=True,
        )
        first_line = result.stdout.strip().splitlines()[0]
        return float(first_line.strip()) / 1024
    except (OSError, subprocess.SubprocessError, ValueError, IndexError):
        return None


def total_device_memory_gb(capability: Capability) -> float:
    """Memory budget of the device that holds the model, in GiB."""
    ram = system_memory_gb()

    if capability is Capability.CUDA:
        vram = nvidia_total_memory_gb()
        if vram is not None:
            return vram
        if ram is None:
            return UNKNOWN_SYSTEM_MEMORY_GB
        return max(ram * GPU_FALLBACK_FRACTION, GPU_FALLBACK_MIN_GB)

    if ram is None:
        return UNKNOWN_SYSTEM_MEMORY_GB
    if capability is Capability.METAL:
        return ram * UNIFIED_MEMORY_FRACTION
    return ram * CPU_MEMORY_FRACTION


def model_size_gb(parameter_count: Optional[int]) -> float:
    if not parameter_count:
        return DEFAULT_MODEL_SIZE_GB
    for max_params, size in PARAMETER_CLASS_SIZES_GB:
        if parameter_count <= max_params:
            return size
    return PARAMETER_CLASS_SIZES_GB[-1][1]


def kv_cache_size_gb(
    gpu_layers: int,
    context_length: int,
    hidden_size: int = DEFAULT_HIDDEN_SIZE,
    max_layers: int = DEFAULT_MAX_LAYERS,
) -> float:
    """``2 (K and V) * layers * context * hidden * bytes / 1e9``."""
    layers = min(max(gpu_layers, 0), max_layers)
    return 2 * layers * context_length * hidden_size * KV_BYTES_PER_ELEMENT / 1e9


def _handle_attr(handle: Any, name: str) -> Optional[int]:
    try:
        value = getattr(handle, name)
    except (AttributeError, TypeError, ValueError):
        return None
    return int(value) if value else None


def estimate_memory(models: Sequence[Any], capability: Capability) -> MemoryEstimate:
    """Estimate memory use of the loaded models.

    Args:
        models: Pool entries (LoadedModel).
        capability: Compute capability of the running process.

    Returns:
        Summed estimate over all entries; all zeros when nothing is loaded.
    """
    if not models:
        return MemoryEstimate.unavailable()

    total = total_device_memory_gb(capability)

    model_gb = 0.0
    kv_gb = 0.0
    for entry in models:
        handle = entry.handle
        model_gb += model_size_gb(_handle_attr(handle, "parameter_count"))
        kv_gb += kv_cache_size_gb(
            entry.actual_gpu_layers,
            entry.context_length,
            hidden_size=_handle_attr(handle, "hidden_size") or DEFAULT_HIDDEN_SIZE,
            max_layers=_handle_attr(handle, "num_layers") or DEFAULT_MAX_LAYERS,
        )

    used = min(max(model_gb + kv_gb, 0.0), total)
    free = max(total - used, 0.0)
    percent = min(used / total * 100.0, 100.0) if total > 0 else 0.0

    logger.info(f"Memory estimate: {used:.1f} GB / {total:.1f} GB ({percent:.1f}%)")
    return MemoryEstimate(
        available=True,
        total_gb=total,
        used_gb=used,
        free_gb=free,
        usage_percent=percent,
        model_size_gb=model_gb,
        kv_cache_size_gb=kv_gb,
    )
