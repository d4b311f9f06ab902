"""
Shared compute backend handle.

A BackendHandle represents one initialization of the torch runtime for the
probed capability. The model pool creates it lazily on the first load and
shares it with every model loaded afterwards.
"""

import gc
import logging
import time
from typing import Optional

import torch

from gguf_serve_lite.core.errors import BackendInitError
from gguf_serve_lite.device.probe import Capability

logger = logging.getLogger(__name__)


class BackendHandle:
    """Initialized compute runtime.

    Attributes:
        capability: Capability the backend was initialized for.
        gpu_device: torch device for offloaded layers, None on CPU-only.
        num_threads: CPU thread count in effect.
        initialized_at: Wall-clock time of initialization.
    """

    def __init__(
        self,
        capability: Capability,
        gpu_device: Optional[torch.device],
        num_threads: int,
    ) -> None:
        self.capability = capability
        self.gpu_device = gpu_device
        self.num_threads = num_threads
        self.initialized_at = time.time()

    @classmethod
    def initialize(
        cls, capability: Capability, num_threads: Optional[int] = None
    ) -> "BackendHandle":
        """Initialize the runtime for ``capability``.

        Args:
            capability: Probed compute capability.
            num_threads: CPU threads to use (None keeps torch's default).

        Returns:
            Initialized backend handle.

        Raises:
            BackendInitError: If the runtime cannot be initialized.
        """
        logger.info(f"Initializing {capability.display_name} backend")
        try:
            if num_threads is not None:
                torch.set_num_threads(num_threads)

            gpu_device = None
            if capability is Capability.CUDA:
                torch.cuda.init()
                gpu_device = torch.device("cuda", torch.cuda.current_device())
            elif capability is Capability.METAL:
                gpu_device = torch.device("mps")
        except Exception as e:
            raise BackendInitError(f"Backend init failed: {e}") from e

        return cls(capability, gpu_device, torch.get_num_threads())

    @property
    def name(self) -> str:
        return self.capability.display_name

    def release(self) -> None:
        """Return cached accelerator memory to the driver (best-effort)."""
        gc.collect()
        if self.capability is Capability.CUDA and torch.cuda.is_available():
            torch.cuda.empty_cache()
        elif self.capability is Capability.METAL and hasattr(torch, "mps"):
            torch.mps.empty_cache()

    def __repr__(self) -> str:
        return (
            f"BackendHandle(capability={self.capability.value}, "
            f"gpu_device={self.gpu_device}, num_threads={self.num_threads})"
        )
