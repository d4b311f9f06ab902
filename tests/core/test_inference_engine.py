"""
Tests for InferenceEngine.

The engine is wired to fake loaders so every operation of the external
interface runs without model weights.
"""

import asyncio
import struct
import threading

import pytest

from gguf_serve_lite import InferenceEngine
from gguf_serve_lite.core.config import EngineConfig
from gguf_serve_lite.core.errors import (
    CorruptModelError,
    InvalidFormatError,
    ModelFileNotFoundError,
    ModelNotInPoolError,
    PromptTooLongError,
)
from gguf_serve_lite.device import Capability
from gguf_serve_lite.gguf.reader import GGUF_TYPE_STRING


@pytest.fixture
def make_engine(fake_loader_cls, fake_backend_factory):
    def _make(script=(), capability=Capability.CPU, loader=None, **config):
        return InferenceEngine(
            EngineConfig(**config),
            capability=capability,
            loader=loader or fake_loader_cls(script=script),
            backend_factory=fake_backend_factory,
        )

    return _make


@pytest.mark.unit
class TestLoadUnload:
    """Test model lifecycle."""

    def test_load_returns_status(self, make_engine, model_file):
        engine = make_engine()
        path = model_file()

        status = engine.load_model(path, context_length=2048, gpu_layers=0)

        assert path in status
        assert "CPU only" in status
        assert engine.model_status() == [path]

    def test_gpu_request_on_cpu_build(self, make_engine, model_file):
        engine = make_engine(capability=Capability.CPU)
        path = model_file()
        engine.load_model(path, gpu_layers=28)

        entry, _ = engine.pool.get(path)
        assert entry.actual_gpu_layers == 0

    def test_gpu_status(self, make_engine, model_file):
        engine = make_engine(capability=Capability.CUDA)
        status = engine.load_model(model_file(), gpu_layers=12)

        assert "12 GPU layers" in status

    def test_load_missing(self, make_engine, tmp_path):
        with pytest.raises(ModelFileNotFoundError):
            make_engine().load_model(str(tmp_path / "absent.gguf"))

    def test_load_small_file(self, make_engine, model_file):
        engine = make_engine()
        with pytest.raises(CorruptModelError):
            engine.load_model(model_file("model.gguf", size_mb=2))
        assert engine.model_status() == []

    def test_unload(self, make_engine, model_file, ids):
        engine = make_engine(ids("x"))
        path = model_file()
        engine.load_model(path)

        assert engine.unload_model() == "All models unloaded"
        assert engine.model_status() == []
        with pytest.raises(ModelNotInPoolError):
            engine.generate(path, "hello")

    def test_unload_without_models(self, make_engine):
        assert make_engine().unload_model() == "All models unloaded"

    def test_reload_same_path(self, make_engine, model_file, fake_backend_factory):
        engine = make_engine()
        path = model_file()
        engine.load_model(path)
        engine.load_model(path)

        assert engine.model_status() == [path]
        assert fake_backend_factory.calls == 1


@pytest.mark.unit
class TestGenerate:
    """Test blocking and streaming generation."""

    def test_generate_text(self, make_engine, model_file, ids):
        engine = make_engine(ids(" Merhaba!<|im_end|>"))
        path = model_file()
        engine.load_model(path)

        assert engine.generate(path, "Selam", max_tokens=64, temperature=0.0) == "Merhaba!"

    def test_generate_result(self, make_engine, model_file, ids):
        engine = make_engine(ids("abc"))
        path = model_file()
        engine.load_model(path)

        result = engine.generate_result(path, "hi", max_tokens=2)

        assert result.text == "ab"
        assert result.finish_reason == "length"
        assert result.prompt_tokens == 3

    def test_unknown_model(self, make_engine):
        with pytest.raises(ModelNotInPoolError):
            make_engine().generate("/not/loaded.gguf", "hi")

    def test_prompt_too_long(self, make_engine, model_file):
        engine = make_engine()
        path = model_file()
        engine.load_model(path, context_length=4)

        with pytest.raises(PromptTooLongError):
            engine.generate(path, "this prompt is too long")

    def test_stream_lookup_is_eager(self, make_engine):
        with pytest.raises(ModelNotInPoolError):
            make_engine().generate_stream("/nope.gguf", "hi")

    def test_stream(self, make_engine, model_file, ids):
        engine = make_engine(ids("ok"))
        path = model_file()
        engine.load_model(path)

        events = list(engine.generate_stream(path, "hi"))

        assert [e.token for e in events[:-1]] == ["o", "k"]
        assert events[-1].is_complete
        assert events[-1].text == "ok"

    def test_cancel_event(self, make_engine, model_file, ids):
        engine = make_engine(ids("abc"))
        path = model_file()
        engine.load_model(path)
        event = threading.Event()
        event.set()

        assert engine.generate(path, "hi", cancel_event=event) == ""

    def test_running_generation_keeps_old_handle(self, make_engine, model_file, ids):
        engine = make_engine(ids("abcdef"))
        path = model_file()
        engine.load_model(path)
        old_handle = engine.pool.get(path)[0].handle

        stream = engine.generate_stream(path, "hi")
        first = next(stream)
        engine.load_model(path)
        rest = list(stream)

        assert first.token == "a"
        assert rest[-1].text == "abcdef"
        assert engine.pool.get(path)[0].handle is not old_handle
        assert len(old_handle.contexts) == 1


@pytest.mark.unit
class TestQueries:
    """Test status, memory, metadata and backend queries."""

    def test_memory_info_empty(self, make_engine):
        info = make_engine().memory_info()
        assert not info.available
        assert info.total_gb == 0.0

    def test_memory_info_loaded(self, make_engine, model_file):
        engine = make_engine()
        engine.load_model(model_file())

        info = engine.memory_info()

        assert info.available
        assert 0.0 <= info.usage_percent <= 100.0
        assert info.used_gb <= info.total_gb

    def test_read_model_metadata(self, make_engine, gguf_file, gguf_bytes):
        entry = gguf_bytes["kv"]("general.name", GGUF_TYPE_STRING, gguf_bytes["string"]("tiny"))
        metadata = make_engine().read_model_metadata(gguf_file(entries=[entry]))

        assert metadata["general.name"] == "tiny"
        assert metadata["gguf_version"] == 3

    def test_read_metadata_entry_limit(self, make_engine, gguf_file, gguf_bytes):
        entries = [
            gguf_bytes["kv"](f"k{i}", 4, struct.pack("<I", i)) for i in range(3)
        ]
        metadata = make_engine(max_metadata_entries=1).read_model_metadata(
            gguf_file(entries=entries)
        )

        assert "k0" in metadata and "k1" not in metadata

    def test_read_metadata_bad_magic(self, make_engine, tmp_path):
        path = tmp_path / "x.gguf"
        path.write_bytes(b"NOPE" + b"\x00" * 20)

        with pytest.raises(InvalidFormatError):
            make_engine().read_model_metadata(str(path))

    def test_backend_info_cpu(self, make_engine):
        info = make_engine(capability=Capability.CPU).backend_info()

        assert info["backend"] == "CPU"
        assert info["cuda_available"] is False
        assert info["recommended_gpu_layers"] == 0
        assert info["backend_initialized"] is False

    def test_backend_info_cuda(self, make_engine, model_file):
        engine = make_engine(capability=Capability.CUDA)
        engine.load_model(model_file())
        info = engine.backend_info()

        assert info["backend"] == "CUDA"
        assert info["cuda_available"] is True
        assert info["recommended_gpu_layers"] == 28
        assert info["backend_initialized"] is True
        assert "num_threads" in info


@pytest.mark.unit
class TestAsync:
    """Test the asyncio wrappers."""

    def test_aload_and_agenerate(self, make_engine, model_file, ids):
        engine = make_engine(ids("async"))
        path = model_file()

        async def scenario():
            await engine.aload_model(path)
            text = await engine.agenerate(path, "hi")
            status = await engine.aunload_model()
            return text, status

        text, status = asyncio.run(scenario())

        assert text == "async"
        assert status == "All models unloaded"
        assert engine.model_status() == []

    def test_agenerate_stream_in_order(self, make_engine, model_file, ids):
        engine = make_engine(ids("stream me"))
        path = model_file()
        engine.load_model(path)

        async def collect():
            return [event async for event in engine.agenerate_stream(path, "hi")]

        events = asyncio.run(collect())

        assert [e.index for e in events[:-1]] == list(range(len(ids("stream me"))))
        assert "".join(e.token for e in events[:-1]) == "stream me"
        assert events[-1].is_complete

    def test_agenerate_stream_error(self, make_engine, model_file):
        engine = make_engine()
        path = model_file()
        engine.load_model(path, context_length=2)

        async def collect():
            return [event async for event in engine.agenerate_stream(path, "too long")]

        with pytest.raises(PromptTooLongError):
            asyncio.run(collect())

    def test_agenerate_stream_early_close_cancels(self, make_engine, model_file, ids):
        engine = make_engine(ids("x" * 50))
        path = model_file()
        engine.load_model(path)
        cancel = threading.Event()

        async def take_one():
            stream = engine.agenerate_stream(path, "hi", cancel_event=cancel)
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = asyncio.run(take_one())

        assert first.token == "x"
        assert cancel.is_set()
