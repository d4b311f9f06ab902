"""
GGUF model loading with partial layer offload.

Weights and tokenizer come from transformers' GGUF reader (dequantized on
load). ``gpu_layers`` decides placement: 0 keeps everything on CPU, a value
covering every decoder block moves the model wholesale, anything in between
pins the first blocks on the accelerator and dispatches with accelerate.
"""

import logging
import os
from typing import Any, Dict, Optional, Tuple

import torch
from accelerate import dispatch_model
from transformers import AutoModelForCausalLM, AutoTokenizer

from gguf_serve_lite.core.errors import DeviceOutOfMemoryError
from gguf_serve_lite.device.backend import BackendHandle
from gguf_serve_lite.models.gguf_model import GGUFModel

logger = logging.getLogger(__name__)

# Attribute paths of the decoder block list across common architectures
BLOCK_PREFIXES = ("model.layers", "transformer.h", "gpt_neox.layers", "model.decoder.layers")
EMBED_MODULES = ("model.embed_tokens", "model.decoder.embed_tokens", "transformer.wte", "gpt_neox.embed_in")
TAIL_MODULES = ("lm_head", "model.norm", "model.decoder.final_layer_norm", "transformer.ln_f",
                "gpt_neox.final_layer_norm", "embed_out")


def _get_attr_path(obj: Any, path: str) -> Any:
    for part in path.split("."):
        obj = getattr(obj, part, None)
        if obj is None:
            return None
    return obj


def find_decoder_blocks(model: Any) -> Tuple[Optional[str], int]:
    """Locate the decoder block list.

    Returns:
        (attribute prefix, number of blocks), or (None, 0) if unknown.
    """
    for prefix in BLOCK_PREFIXES:
        blocks = _get_attr_path(model, prefix)
        if blocks is not None:
            return prefix, len(blocks)
    return None, 0


def build_layer_device_map(model: Any, gpu_layers: int, device: str) -> Dict[str, str]:
    """Pin the embeddings and the first ``gpu_layers`` blocks on ``device``.

    Everything else stays on CPU. The final norm and output head follow the
    last block: on the accelerator only when every block is there.

    Raises:
        ValueError: If the architecture has no recognised block list.
    """
    prefix, total = find_decoder_blocks(model)
    if prefix is None:
        raise ValueError(f"Layer offload unsupported for {type(model).__name__}")

    n = min(gpu_layers, total)
    device_map = {"": "cpu"}

    for name in EMBED_MODULES:
        if _get_attr_path(model, name) is not None:
            device_map[name] = device

    for i in range(n):
        device_map[f"{prefix}.{i}"] = device

    tail_device = device if n >= total else "cpu"
    for name in TAIL_MODULES:
        if _get_attr_path(model, name) is not None:
            device_map[name] = tail_device

    return device_map


def place_layers(model: Any, backend: BackendHandle, gpu_layers: int) -> Any:
    """Move ``model`` onto the backend device according to ``gpu_layers``."""
    if gpu_layers <= 0 or backend.gpu_device is None:
        return model

    _, total = find_decoder_blocks(model)
    if total == 0 or gpu_layers >= total:
        return model.to(backend.gpu_device)

    device_map = build_layer_device_map(model, gpu_layers, str(backend.gpu_device))
    logger.info(f"Offloading {gpu_layers}/{total} layers to {backend.gpu_device}")
    return dispatch_model(model, device_map=device_map, main_device=str(backend.gpu_device))


def load_gguf_model(backend: BackendHandle, path: str, gpu_layers: int) -> GGUFModel:
    """Load a GGUF file into a GGUFModel.

    Args:
        backend: Initialized backend handle.
        path: Path of the GGUF file (first shard for split models).
        gpu_layers: Decoder blocks to place on the accelerator.

    Raises:
        DeviceOutOfMemoryError: If the accelerator runs out of memory.
        Exception: Any transformers loading error, unchanged.
    """
    directory, filename = os.path.split(os.path.abspath(path))
    use_gpu = gpu_layers > 0 and backend.gpu_device is not None
    dtype = torch.float16 if use_gpu else torch.float32

    logger.info(f"Loading {filename} (gpu_layers={gpu_layers}, dtype={dtype})")

    tokenizer = AutoTokenizer.from_pretrained(directory, gguf_file=filename)
    model = AutoModelForCausalLM.from_pretrained(
        directory,
        gguf_file=filename,
        torch_dtype=dtype,
        low_cpu_mem_usage=True,
    )
    model.eval()

    try:
        model = place_layers(model, backend, gpu_layers)
    except torch.cuda.OutOfMemoryError as e:
        del model
        backend.release()
        raise DeviceOutOfMemoryError(f"Out of device memory placing {gpu_layers} layers: {e}") from e

    _, total = find_decoder_blocks(model)
    placed = min(gpu_layers, total) if use_gpu else 0
    return GGUFModel(model, tokenizer, path, gpu_layers=placed)
