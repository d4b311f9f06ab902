"""
Model backend on top of transformers' GGUF support.

Provides:
- GGUFModel: Loaded model with tokenizer and end-of-generation detection
- DecodeContext: Per-request KV workspace
- IncrementalDetokenizer: UTF-8 safe streaming detokenization
- load_gguf_model: Load a GGUF file with optional partial GPU offload
"""

from gguf_serve_lite.models.detokenizer import IncrementalDetokenizer
from gguf_serve_lite.models.gguf_model import DecodeContext, GGUFModel
from gguf_serve_lite.models.loader import load_gguf_model

__all__ = ["DecodeContext", "GGUFModel", "IncrementalDetokenizer", "load_gguf_model"]
