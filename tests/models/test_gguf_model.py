"""
Tests for GGUFModel and DecodeContext.

A tiny randomly initialized Llama stands in for a GGUF checkpoint; the
decode context only depends on the transformers model interface.
"""

import pytest
import torch
from transformers import LlamaConfig, LlamaForCausalLM

from gguf_serve_lite.core.errors import DecodeError, TokenizationError
from gguf_serve_lite.models.gguf_model import GGUFModel


@pytest.fixture(scope="module")
def tiny_llama() -> LlamaForCausalLM:
    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=272,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=256,
        bos_token_id=1,
        eos_token_id=2,
    )
    model = LlamaForCausalLM(config)
    model.eval()
    return model


@pytest.fixture
def gguf_model(tiny_llama, fake_tokenizer) -> GGUFModel:
    return GGUFModel(tiny_llama, fake_tokenizer, "/models/tiny.gguf")


@pytest.mark.unit
class TestTokenize:
    def test_bos_prepended(self, gguf_model, ids):
        assert gguf_model.tokenize("hi") == [1] + ids("hi")

    def test_without_bos(self, gguf_model, ids):
        assert gguf_model.tokenize("hi", add_bos=False) == ids("hi")

    def test_empty_prompt_is_bos(self, gguf_model):
        assert gguf_model.tokenize("") == [1]

    def test_failure_wrapped(self, gguf_model, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("bad merges")

        monkeypatch.setattr(gguf_model.tokenizer, "encode", boom)

        with pytest.raises(TokenizationError, match="bad merges"):
            gguf_model.tokenize("hi")


@pytest.mark.unit
class TestModelInfo:
    def test_eog_tokens(self, gguf_model, ids):
        assert gguf_model.is_eog(2)
        assert gguf_model.is_eog(3)  # <|im_end|>
        assert not gguf_model.is_eog(ids("a")[0])
        assert not gguf_model.is_eog(1)

    def test_shape_properties(self, gguf_model, tiny_llama):
        assert gguf_model.num_layers == 2
        assert gguf_model.hidden_size == 32
        assert gguf_model.parameter_count == sum(p.numel() for p in tiny_llama.parameters())
        assert gguf_model.input_device.type == "cpu"
        assert gguf_model.gpu_layers == 0


@pytest.mark.unit
class TestDecodeContext:
    """Test KV-cached forward passes."""

    def test_logits_shape(self, gguf_model, ids):
        context = gguf_model.new_context(n_ctx=64, n_batch=32)
        context.decode([1] + ids("hello"), 0, want_logits=True)

        logits = context.logits()
        assert logits.shape == (272,)
        assert logits.dtype == torch.float32
        assert context.n_past == 6

    def test_chunked_prefill_matches_single_pass(self, gguf_model, ids):
        tokens = [1] + ids("chunked prefill must match")

        single = gguf_model.new_context(n_ctx=128, n_batch=64)
        single.decode(tokens, 0, want_logits=True)

        chunked = gguf_model.new_context(n_ctx=128, n_batch=8)
        for start in range(0, len(tokens), 8):
            chunk = tokens[start:start + 8]
            chunked.decode(chunk, start, want_logits=start + 8 >= len(tokens))

        assert torch.allclose(single.logits(), chunked.logits(), atol=1e-4)

    def test_incremental_step_matches_full_pass(self, gguf_model, ids):
        prompt = [1] + ids("abc")
        next_token = ids("d")[0]

        stepped = gguf_model.new_context(n_ctx=32, n_batch=32)
        stepped.decode(prompt, 0, want_logits=True)
        stepped.decode([next_token], len(prompt), want_logits=True)

        full = gguf_model.new_context(n_ctx=32, n_batch=32)
        full.decode(prompt + [next_token], 0, want_logits=True)

        assert torch.allclose(stepped.logits(), full.logits(), atol=1e-4)

    def test_logits_before_decode(self, gguf_model):
        with pytest.raises(DecodeError):
            gguf_model.new_context(16, 16).logits()

    def test_chunk_without_logits_keeps_none(self, gguf_model, ids):
        context = gguf_model.new_context(16, 16)
        context.decode(ids("ab"), 0, want_logits=False)

        with pytest.raises(DecodeError):
            context.logits()

    def test_empty_batch(self, gguf_model):
        with pytest.raises(DecodeError, match="empty"):
            gguf_model.new_context(16, 16).decode([], 0, want_logits=True)

    def test_batch_too_large(self, gguf_model, ids):
        with pytest.raises(DecodeError, match="n_batch"):
            gguf_model.new_context(64, 4).decode(ids("hello"), 0, want_logits=True)

    def test_non_contiguous(self, gguf_model, ids):
        context = gguf_model.new_context(16, 16)
        context.decode(ids("ab"), 0, want_logits=True)

        with pytest.raises(DecodeError, match="Non-contiguous"):
            context.decode(ids("c"), 5, want_logits=True)

    def test_workspace_overflow(self, gguf_model, ids):
        context = gguf_model.new_context(n_ctx=4, n_batch=16)
        context.decode(ids("abc"), 0, want_logits=True)

        with pytest.raises(DecodeError, match="exhausted"):
            context.decode(ids("de"), 3, want_logits=True)

    def test_forward_failure_wrapped(self, gguf_model):
        context = gguf_model.new_context(16, 16)

        with pytest.raises(DecodeError):
            context.decode([10_000], 0, want_logits=True)
        assert context.n_past == 0

    def test_detokenizer(self, gguf_model, ids):
        detok = gguf_model.detokenizer()
        assert "".join(detok.push(t) for t in ids("ok")) == "ok"
