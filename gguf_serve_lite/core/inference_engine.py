"""
Core inference engine for text generation.

InferenceEngine is the service object behind the external interface: it
owns one ModelPool and exposes load/unload, generation (blocking and
streaming), status, memory and metadata queries. Blocking operations have
async counterparts that run on the event loop's default executor.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

from gguf_serve_lite.batch import GenerationResult, InferenceRequest, TokenEvent
from gguf_serve_lite.core.config import EngineConfig
from gguf_serve_lite.core.inference_session import InferenceSession
from gguf_serve_lite.device import BackendHandle, Capability
from gguf_serve_lite.gguf import read_model_metadata
from gguf_serve_lite.memory import MemoryEstimate, ModelDescriptor, ModelPool, estimate_memory
from gguf_serve_lite.memory.model_pool import BackendFactory, Loader

logger = logging.getLogger(__name__)

RECOMMENDED_GPU_LAYERS = 28

_STREAM_END = object()


class InferenceEngine:
    """Local GGUF inference service.

    Args:
        config: Engine configuration (defaults to EngineConfig()).
        capability: Compute capability override; probed when None.
        loader: Model loader override, see ModelPool.
        backend_factory: Backend factory override, see ModelPool.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        capability: Optional[Capability] = None,
        loader: Optional[Loader] = None,
        backend_factory: Optional[BackendFactory] = None,
    ):
        self.config = config or EngineConfig()
        self.pool = ModelPool(
            self.config,
            capability=capability,
            loader=loader,
            backend_factory=backend_factory,
        )

    def load_model(self, path: str, context_length: int = 4096, gpu_layers: int = 0) -> str:
        """Load a GGUF model into the pool.

        Args:
            path: Model file; any shard of a split model is accepted.
            context_length: Maximum prompt length in tokens.
            gpu_layers: Layers to offload; clamped to 0 without a GPU.

        Returns:
            Human-readable status line.

        Raises:
            ModelFileNotFoundError, CorruptModelError, BackendInitError,
            ModelLoadError: See ModelPool.load. The pool is unchanged on
            failure.
        """
        entry = self.pool.load(ModelDescriptor(path, context_length, gpu_layers))
        placement = (
            f"{entry.actual_gpu_layers} GPU layers on {entry.device}"
            if entry.actual_gpu_layers > 0
            else "CPU only"
        )
        return f"Model loaded: {entry.resolved_path} ({placement}, context {entry.context_length})"

    def unload_model(self) -> str:
        """Unload every model and release the backend. Never raises."""
        self.pool.clear()
        return "All models unloaded"

    def _session(
        self,
        model_key: str,
        prompt: str,
        max_tokens: int,
        temperature: float,
        seed: Optional[int],
        cancel_event: Optional[threading.Event],
    ) -> InferenceSession:
        entry, _ = self.pool.get(model_key)
        request = InferenceRequest(
            model_key=model_key,
            prompt=prompt,
            max_output_tokens=max_tokens,
            temperature=temperature,
            seed=seed,
        )
        return InferenceSession(entry, request, self.config, cancel_event)

    def generate_result(
        self,
        model_key: str,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.7,
        seed: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        """Like generate, but returns the full GenerationResult."""
        session = self._session(model_key, prompt, max_tokens, temperature, seed, cancel_event)
        return session.run()

    def generate(
        self,
        model_key: str,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.7,
        seed: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Generate text for a prompt.

        Args:
            model_key: Resolved path of a loaded model (see model_status).
            prompt: Prompt text.
            max_tokens: Maximum number of generated tokens.
            temperature: 0 or 1 select greedily, other positive values sample.
            seed: Seed for reproducible sampling.
            cancel_event: Stops generation early when set.

        Returns:
            Generated text with control markers stripped.

        Raises:
            ModelNotInPoolError: No model is loaded under ``model_key``.
            TokenizationError, PromptTooLongError, DecodeError: See
                InferenceSession.stream.
        """
        return self.generate_result(
            model_key, prompt, max_tokens, temperature, seed, cancel_event
        ).text

    def generate_stream(
        self,
        model_key: str,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.7,
        seed: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[TokenEvent]:
        """Stream generation events in order.

        The model lookup happens immediately, so ModelNotInPoolError is
        raised by this call rather than on first iteration.
        """
        session = self._session(model_key, prompt, max_tokens, temperature, seed, cancel_event)
        return session.stream()

    def model_status(self) -> List[str]:
        return self.pool.status()

    def memory_info(self) -> MemoryEstimate:
        return estimate_memory(self.pool.snapshot(), self.pool.capability)

    def read_model_metadata(self, path: str) -> Dict[str, Any]:
        """Read GGUF header metadata without loading the model."""
        return read_model_metadata(
            path,
            max_entries=self.config.max_metadata_entries,
            max_key_length=self.config.max_metadata_key_length,
        )

    def backend_info(self) -> Dict[str, Any]:
        """Describe the compute backend available to this process."""
        capability = self.pool.capability
        info = {
            "backend": capability.display_name,
            "cuda_available": capability is Capability.CUDA,
            "metal_available": capability is Capability.METAL,
            "gpu_available": capability.has_gpu,
            "recommended_gpu_layers": RECOMMENDED_GPU_LAYERS if capability.has_gpu else 0,
            "backend_initialized": self.pool.backend_initialized,
        }
        backend: Optional[BackendHandle] = self.pool.backend
        if backend is not None:
            info["num_threads"] = backend.num_threads
        return info

    async def aload_model(self, path: str, context_length: int = 4096, gpu_layers: int = 0) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load_model, path, context_length, gpu_layers)

    async def aunload_model(self) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.unload_model)

    async def agenerate(
        self,
        model_key: str,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.7,
        seed: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        loop = asyncio.get_running_loop()

        def _generate() -> str:
            return self.generate(model_key, prompt, max_tokens, temperature, seed, cancel_event)

        return await loop.run_in_executor(None, _generate)

    async def agenerate_stream(
        self,
        model_key: str,
        prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.7,
        seed: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AsyncIterator[TokenEvent]:
        """Async generate_stream.

        Generation runs on an executor thread and events are relayed
        through an asyncio.Queue in order. Closing the iterator early stops
        generation at the next step boundary.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = cancel_event or threading.Event()
        events = self.generate_stream(model_key, prompt, max_tokens, temperature, seed, stop)

        def _produce() -> None:
            try:
                for event in events:
                    loop.call_soon_threadsafe(queue.put_nowait, event)
            except Exception as e:
                loop.call_soon_threadsafe(queue.put_nowait, e)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _STREAM_END)

        worker = loop.run_in_executor(None, _produce)
        finished = False
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_END:
                    finished = True
                    break
                if isinstance(item, Exception):
                    finished = True
                    raise item
                yield item
        finally:
            if not finished:
                stop.set()
            await worker
