"""
Pytest configuration and shared fixtures for gguf-serve-lite tests.

This module provides reusable fixtures for testing, including:
- A byte-level fake tokenizer and a scripted fake model handle
- Fake loaders and backend factories for the model pool
- Sparse model files and hand-built GGUF byte fixtures
- CPU device enforcement
"""

import os
import struct
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
import torch

from gguf_serve_lite.core.errors import BackendInitError, DecodeError, TokenizationError
from gguf_serve_lite.device import BackendHandle, Capability, probe_capability
from gguf_serve_lite.models.detokenizer import IncrementalDetokenizer


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""

MIB = 1024 * 1024


class FakeTokenizer:
    """Byte-level tokenizer: every UTF-8 byte is one token.

    Ids 0-15 are reserved for special tokens, byte ``b`` is id ``b + 16``.
    Decoding partial multi-byte characters yields U+FFFD like real
    byte-level BPE tokenizers.
    """

    BYTE_OFFSET = 16
    SPECIALS = {1: "<s>", 2: "</s>", 3: "<|im_end|>", 4: "<|im_start|>"}

    bos_token_id = 1
    eos_token_id = 2

    def __init__(self, fail_on: Sequence[int] = ()):
        self.fail_on = set(fail_on)

    @property
    def vocab_size(self) -> int:
        return self.BYTE_OFFSET + 256

    def encode(self, text: str, add_special_tokens: bool = False) -> List[int]:
        return [b + self.BYTE_OFFSET for b in text.encode("utf-8")]

    def decode(self, ids: Sequence[int], skip_special_tokens: bool = False) -> str:
        out: List[str] = []
        buf = bytearray()
        for token_id in ids:
            if token_id in self.fail_on:
                raise ValueError(f"cannot decode {token_id}")
            if token_id in self.SPECIALS:
                out.append(buf.decode("utf-8", errors="replace"))
                buf = bytearray()
                if not skip_special_tokens:
                    out.append(self.SPECIALS[token_id])
            elif self.BYTE_OFFSET <= token_id < self.vocab_size:
                buf.append(token_id - self.BYTE_OFFSET)
            else:
                raise ValueError(f"unknown token id {token_id}")
        out.append(buf.decode("utf-8", errors="replace"))
        return "".join(out)

    def get_vocab(self) -> Dict[str, int]:
        vocab = {text: token_id for token_id, text in self.SPECIALS.items()}
        for b in range(256):
            vocab[f"<0x{b:02X}>"] = b + self.BYTE_OFFSET
        return vocab


def text_to_ids(text: str) -> List[int]:
    return FakeTokenizer().encode(text)


class FakeContext:
    """KV workspace of FakeModel; enforces the DecodeContext contract."""

    def __init__(self, model: "FakeModel", n_ctx: int, n_batch: int):
        self.model = model
        self.n_ctx = n_ctx
        self.n_batch = n_batch
        self.n_past = 0
        self.prompt_len = model.last_prompt_len
        self.calls: List[Tuple[List[int], int, bool]] = []
        self._has_logits = False

    def decode(self, token_ids: List[int], start_pos: int, want_logits: bool) -> None:
        if not token_ids or len(token_ids) > self.n_batch:
            raise DecodeError(f"bad batch size {len(token_ids)}")
        if start_pos != self.n_past:
            raise DecodeError(f"non-contiguous decode at {start_pos}")
        if start_pos + len(token_ids) > self.n_ctx:
            raise DecodeError("KV cache exhausted")
        if self.model.fail_decode_at is not None and start_pos >= self.model.fail_decode_at:
            raise DecodeError(f"forward failed at {start_pos}")

        self.calls.append((list(token_ids), start_pos, want_logits))
        self.n_past += len(token_ids)
        self._has_logits = want_logits
        if self.model.on_decode is not None:
            self.model.on_decode(self)

    def logits(self) -> torch.Tensor:
        if not self._has_logits:
            raise DecodeError("no logits requested")
        step = self.n_past - self.prompt_len
        script = self.model.script
        target = script[step] if step < len(script) else self.model.tokenizer.eos_token_id

        scores = torch.full((self.model.tokenizer.vocab_size,), -10.0)
        scores[target] = 10.0
        return scores


class FakeModel:
    """Model handle that emits a fixed token script, then EOS."""

    def __init__(
        self,
        script: Sequence[int] = (),
        gpu_layers: int = 0,
        tokenizer: Optional[FakeTokenizer] = None,
        num_layers: int = 24,
        hidden_size: int = 2048,
        parameter_count: int = 500_000_000,
    ):
        self.script = list(script)
        self.gpu_layers = gpu_layers
        self.tokenizer = tokenizer or FakeTokenizer()
        self.num_layers = num_layers
        self.hidden_size = hidden_size
        self.parameter_count = parameter_count
        self.fail_tokenize = False
        self.fail_decode_at: Optional[int] = None
        self.on_decode: Optional[Callable[[FakeContext], None]] = None
        self.last_prompt_len = 0
        self.contexts: List[FakeContext] = []

    def tokenize(self, text: str, add_bos: bool = True) -> List[int]:
        if self.fail_tokenize:
            raise TokenizationError("tokenizer exploded")
        ids = self.tokenizer.encode(text)
        if add_bos:
            ids.insert(0, self.tokenizer.bos_token_id)
        self.last_prompt_len = len(ids)
        return ids

    def is_eog(self, token_id: int) -> bool:
        return token_id in (2, 3)

    def new_context(self, n_ctx: int, n_batch: int) -> FakeContext:
        context = FakeContext(self, n_ctx, n_batch)
        self.contexts.append(context)
        return context

    def detokenizer(self) -> IncrementalDetokenizer:
        return IncrementalDetokenizer(self.tokenizer)


class FakeLoader:
    """Loader recording every call; fails for the configured layer counts."""

    def __init__(self, fail_gpu: bool = False, fail_cpu: bool = False, script: Sequence[int] = ()):
        self.fail_gpu = fail_gpu
        self.fail_cpu = fail_cpu
        self.script = list(script)
        self.calls: List[Tuple[str, int]] = []

    def __call__(self, backend: BackendHandle, path: str, gpu_layers: int) -> FakeModel:
        self.calls.append((path, gpu_layers))
        if gpu_layers > 0 and self.fail_gpu:
            raise RuntimeError("CUDA out of memory")
        if gpu_layers == 0 and self.fail_cpu:
            raise RuntimeError("cannot allocate memory")
        return FakeModel(self.script, gpu_layers=gpu_layers)


class FakeBackendFactory:
    """Backend factory counting initializations."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    def __call__(self, capability: Capability, num_threads: Optional[int]) -> BackendHandle:
        self.calls += 1
        if self.fail:
            raise BackendInitError("no device")
        gpu_device = torch.device("cuda", 0) if capability is Capability.CUDA else None
        return BackendHandle(capability, gpu_device, num_threads or 1)


def gguf_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack("<Q", len(data)) + data


def gguf_kv(key: str, value_type: int, payload: bytes) -> bytes:
    return gguf_string(key) + struct.pack("<I", value_type) + payload


def gguf_header(version: int = 3, tensor_count: int = 0, kv_count: int = 0) -> bytes:
    return b"GGUF" + struct.pack("<IQQ", version, tensor_count, kv_count)


@pytest.fixture(autouse=True)
def clear_capability_cache():
    """Reset the per-process capability probe around every test."""
    probe_capability.cache_clear()
    yield
    probe_capability.cache_clear()


@pytest.fixture(scope="session")
def cpu_device() -> torch.device:
    """Force CPU device for tests that build tensors explicitly."""
    return torch.device("cpu")


@pytest.fixture
def fake_tokenizer() -> FakeTokenizer:
    return FakeTokenizer()


@pytest.fixture
def fake_tokenizer_cls():
    return FakeTokenizer


@pytest.fixture
def fake_model_cls():
    return FakeModel


@pytest.fixture
def fake_loader_cls():
    return FakeLoader


@pytest.fixture
def fake_backend_factory() -> FakeBackendFactory:
    return FakeBackendFactory()


@pytest.fixture
def ids():
    """Convert text to fake tokenizer ids."""
    return text_to_ids


@pytest.fixture
def model_file(tmp_path) -> Callable[..., str]:
    """Create a sparse file of the given size in MiB.

    Example:
        def test_load(model_file):
            path = model_file("model.gguf", size_mb=12)
    """

    def _create(name: str = "model.gguf", size_mb: float = 12) -> str:
        path = tmp_path / name
        with open(path, "wb") as f:
            f.truncate(int(size_mb * MIB))
        return str(path)

    return _create


@pytest.fixture
def gguf_file(tmp_path) -> Callable[..., str]:
    """Write a GGUF file from header fields and raw key/value bytes."""

    def _create(
        entries: Sequence[bytes] = (),
        kv_count: Optional[int] = None,
        version: int = 3,
        tensor_count: int = 0,
        name: str = "meta.gguf",
        tail: bytes = b"",
    ) -> str:
        count = len(entries) if kv_count is None else kv_count
        data = gguf_header(version, tensor_count, count) + b"".join(entries) + tail
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)

    return _create


@pytest.fixture
def gguf_bytes() -> Dict[str, Any]:
    """Helpers for building GGUF metadata byte fixtures."""
    return {"string": gguf_string, "kv": gguf_kv, "header": gguf_header}
