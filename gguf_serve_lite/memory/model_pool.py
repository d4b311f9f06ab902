"""
Pool of loaded models sharing one compute backend.

The pool maps resolved model paths to loaded models. Its lock guards only
map lookups and mutations plus the one-time backend initialization; callers
use the returned model handle outside the lock, so a long generation never
blocks loads or unloads of other models.

Loading follows a two-step state machine: one attempt with the requested
(clamped) GPU layer count and, if that fails, one CPU-only retry.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from gguf_serve_lite.core.config import EngineConfig
from gguf_serve_lite.core.errors import (
    BackendInitError,
    CorruptModelError,
    ModelFileNotFoundError,
    ModelLoadError,
    ModelNotInPoolError,
)
from gguf_serve_lite.device import BackendHandle, Capability, clamp_gpu_layers, probe_capability
from gguf_serve_lite.gguf.shards import is_shard_path, resolve_shard_path

logger = logging.getLogger(__name__)

Loader = Callable[[BackendHandle, str, int], Any]
BackendFactory = Callable[[Capability, Optional[int]], BackendHandle]

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class ModelDescriptor:
    """What the caller asked to load.

    Attributes:
        path: Model path as given (may name any shard of a split model).
        context_length: Maximum prompt length in tokens.
        gpu_layers: Requested number of layers to offload.
    """

    path: str
    context_length: int = 4096
    gpu_layers: int = 0

    def __post_init__(self) -> None:
        if self.context_length <= 0:
            raise ValueError(f"context_length must be positive, got {self.context_length}")


@dataclass
class LoadedModel:
    """A pool entry.

    Attributes:
        handle: Loaded model (a GGUFModel in production).
        resolved_path: Pool key; first shard for split models.
        context_length: Maximum prompt length in tokens.
        actual_gpu_layers: Layers actually offloaded (0 after CPU fallback).
        device: Device holding the offloaded layers, "cpu" if none.
        loaded_at: Wall-clock load time.
    """

    handle: Any
    resolved_path: str
    context_length: int
    actual_gpu_layers: int
    device: str = "cpu"
    loaded_at: float = field(default_factory=time.time)


class LoadPhase(Enum):
    ATTEMPTING = "attempting"
    LOADED = "loaded"
    FAILED = "failed"


@dataclass
class LoadAttempt:
    """One step of the load state machine."""

    gpu_layers: int
    phase: LoadPhase = LoadPhase.ATTEMPTING
    error: Optional[BaseException] = None

    def succeed(self) -> None:
        self.phase = LoadPhase.LOADED

    def fail(self, error: BaseException) -> None:
        self.phase = LoadPhase.FAILED
        self.error = error


def _default_loader(backend: BackendHandle, path: str, gpu_layers: int) -> Any:
    # Deferred so that importing the pool does not pull in transformers
    from gguf_serve_lite.models.loader import load_gguf_model

    return load_gguf_model(backend, path, gpu_layers)


class ModelPool:
    """Loaded models keyed by resolved path.

    Args:
        config: Engine configuration (defaults to EngineConfig()).
        capability: Compute capability; probed on first use when None.
        loader: ``loader(backend, path, gpu_layers)`` returning a model handle.
        backend_factory: ``factory(capability, num_threads)`` returning a
            BackendHandle.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        capability: Optional[Capability] = None,
        loader: Optional[Loader] = None,
        backend_factory: Optional[BackendFactory] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.loader = loader or _default_loader
        self.backend_factory = backend_factory or BackendHandle.initialize
        self._capability = capability

        self.backend: Optional[BackendHandle] = None
        self.models: Dict[str, LoadedModel] = {}
        self._backend_error: Optional[BackendInitError] = None

        self.lock = threading.Lock()

    @property
    def capability(self) -> Capability:
        if self._capability is None:
            self._capability = Capability.CPU if self.config.force_cpu else probe_capability()
        return self._capability

    @property
    def backend_initialized(self) -> bool:
        return self.backend is not None

    def _ensure_backend(self) -> BackendHandle:
        with self.lock:
            if self._backend_error is not None:
                raise BackendInitError(
                    f"Backend initialization failed earlier and is not retried: {self._backend_error}"
                )
            if self.backend is None:
                try:
                    self.backend = self.backend_factory(self.capability, self.config.num_threads)
                except BackendInitError as e:
                    self._backend_error = e
                    raise
                logger.info(f"Backend ready: {self.backend}")
            return self.backend

    def _check_file(self, resolved: str) -> None:
        if not os.path.isfile(resolved):
            raise ModelFileNotFoundError(resolved)

        size_mb = os.path.getsize(resolved) // BYTES_PER_MB
        if size_mb < self.config.min_model_size_mb and not is_shard_path(resolved):
            raise CorruptModelError(resolved, size_mb, self.config.min_model_size_mb)

    def _run_attempts(
        self, backend: BackendHandle, path: str, gpu_layers: int
    ) -> Tuple[Any, LoadAttempt]:
        attempts: List[LoadAttempt] = [LoadAttempt(gpu_layers)]
        if gpu_layers > 0:
            attempts.append(LoadAttempt(0))

        for attempt in attempts:
            try:
                handle = self.loader(backend, path, attempt.gpu_layers)
            except Exception as e:
                attempt.fail(e)
                if attempt.gpu_layers > 0:
                    logger.warning(
                        f"Load with {attempt.gpu_layers} GPU layers failed ({e}), retrying on CPU"
                    )
                    backend.release()
                continue
            attempt.succeed()
            return handle, attempt

        logger.error(f"All load attempts failed for {path}")
        gpu_error = attempts[0].error if len(attempts) > 1 else None
        raise ModelLoadError(path, cpu_error=attempts[-1].error, gpu_error=gpu_error)

    def load(self, descriptor: ModelDescriptor) -> LoadedModel:
        """Load a model into the pool.

        Args:
            descriptor: Model path and load options.

        Returns:
            The new pool entry.

        Raises:
            ModelFileNotFoundError: Resolved path does not exist.
            CorruptModelError: Non-shard file below the size threshold.
            BackendInitError: Backend could not be (or previously failed to
                be) initialized.
            ModelLoadError: Every load attempt failed, or the pool was
                unloaded while the model was loading.
        """
        resolved = resolve_shard_path(descriptor.path)
        self._check_file(resolved)

        backend = self._ensure_backend()
        requested = clamp_gpu_layers(descriptor.gpu_layers, backend.capability)

        handle, attempt = self._run_attempts(backend, resolved, requested)
        actual_layers = getattr(handle, "gpu_layers", attempt.gpu_layers)
        entry = LoadedModel(
            handle=handle,
            resolved_path=resolved,
            context_length=descriptor.context_length,
            actual_gpu_layers=actual_layers,
            device=str(backend.gpu_device) if actual_layers > 0 else "cpu",
        )

        with self.lock:
            discarded = self.backend is not backend
            if not discarded:
                if resolved in self.models:
                    logger.warning(
                        f"Replacing loaded model {resolved}; generations already running keep the previous weights"
                    )
                self.models[resolved] = entry

        if discarded:
            logger.warning(f"Discarding {resolved}: models were unloaded while it was loading")
            del entry, handle
            backend.release()
            raise ModelLoadError(
                resolved, cpu_error=RuntimeError("models were unloaded while loading")
            )

        logger.info(
            f"Loaded {resolved} (context_length={entry.context_length}, gpu_layers={actual_layers})"
        )
        return entry

    def get(self, key: str) -> Tuple[LoadedModel, BackendHandle]:
        """Look up a model and the backend it runs on.

        Raises:
            ModelNotInPoolError: If no entry exists for ``key``.
        """
        with self.lock:
            entry = self.models.get(key)
            backend = self.backend
        if entry is None or backend is None:
            raise ModelNotInPoolError(key)
        return entry, backend

    def contains(self, key: str) -> bool:
        with self.lock:
            return key in self.models

    def evict(self, key: str) -> bool:
        """Remove one entry. Returns False if it was not loaded."""
        with self.lock:
            entry = self.models.pop(key, None)
            backend = self.backend
        if entry is None:
            return False
        if backend is not None:
            backend.release()
        logger.info(f"Evicted {key}")
        return True

    def clear(self) -> None:
        """Drop every entry and the backend handle. Never raises."""
        with self.lock:
            count = len(self.models)
            self.models.clear()
            backend, self.backend = self.backend, None

        if backend is not None:
            try:
                backend.release()
            except Exception as e:
                logger.warning(f"Releasing backend memory failed: {e}")
        logger.info(f"Unloaded {count} model(s)")

    def status(self) -> List[str]:
        """Resolved paths of loaded models, in load order."""
        with self.lock:
            return list(self.models.keys())

    def snapshot(self) -> List[LoadedModel]:
        with self.lock:
            return list(self.models.values())

    def __len__(self) -> int:
        with self.lock:
            return len(self.models)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.contains(key)
