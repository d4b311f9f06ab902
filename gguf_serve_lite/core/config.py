"""
Engine configuration.

EngineConfig collects the tunable constants of the engine: workspace sizing,
the minimum model file size, sampler defaults and metadata reader limits.
Values can be overridden from environment variables prefixed with
``GGUF_SERVE_`` (e.g. ``GGUF_SERVE_CHUNK_SIZE=4096``).
"""

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Tuple

ENV_PREFIX = "GGUF_SERVE_"

DEFAULT_STRIP_MARKERS: Tuple[str, ...] = (
    "<|im_start|>",
    "<|im_end|>",
    "<|endoftext|>",
    "<|system|>",
    "<|user|>",
    "<|assistant|>",
    "<|eot_id|>",
    "<|start_header_id|>",
    "<|end_header_id|>",
)


@dataclass
class EngineConfig:
    """Configuration for the inference engine.

    Attributes:
        chunk_size: Maximum number of tokens per forward pass during prefill.
        min_kv_cache_tokens: Lower bound of the per-request KV workspace.
        min_model_size_mb: Single-file models below this size are rejected.
        repetition_penalty: Penalty factor applied to recently seen tokens.
        penalty_last_n: Size of the repetition penalty lookback window.
        max_metadata_entries: Maximum number of GGUF key/value pairs read.
        max_metadata_key_length: Longest accepted GGUF metadata key, in bytes.
        num_threads: CPU threads for the backend (None keeps the default).
        force_cpu: Treat the process as a CPU-only build.
        strip_markers: Control/role markers removed from generated text.
    """

    chunk_size: int = 8192
    min_kv_cache_tokens: int = 4096
    min_model_size_mb: int = 10
    repetition_penalty: float = 1.15
    penalty_last_n: int = 64
    max_metadata_entries: int = 200
    max_metadata_key_length: int = 4096
    num_threads: Optional[int] = None
    force_cpu: bool = False
    strip_markers: Tuple[str, ...] = DEFAULT_STRIP_MARKERS

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If any value is out of range.
        """
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.min_kv_cache_tokens <= 0:
            raise ValueError(
                f"min_kv_cache_tokens must be positive, got {self.min_kv_cache_tokens}"
            )
        if self.min_model_size_mb < 0:
            raise ValueError(
                f"min_model_size_mb must be non-negative, got {self.min_model_size_mb}"
            )
        if self.repetition_penalty < 1.0:
            raise ValueError(
                f"repetition_penalty must be >= 1.0, got {self.repetition_penalty}"
            )
        if self.penalty_last_n < 0:
            raise ValueError(
                f"penalty_last_n must be non-negative, got {self.penalty_last_n}"
            )
        if self.max_metadata_entries < 0:
            raise ValueError(
                f"max_metadata_entries must be non-negative, got {self.max_metadata_entries}"
            )
        if self.num_threads is not None and self.num_threads <= 0:
            raise ValueError(f"num_threads must be positive, got {self.num_threads}")

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "EngineConfig":
        """Create a config with overrides taken from environment variables."""
        data: Dict[str, Any] = {}

        for field_info in fields(cls):
            env_value = os.environ.get(f"{prefix}{field_info.name}".upper())
            if env_value is None:
                continue
            default = getattr(cls, field_info.name, None)
            data[field_info.name] = _coerce(field_info.name, env_value, default)

        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to a dictionary."""
        return asdict(self)


def _coerce(name: str, raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field default."""
    if name == "strip_markers":
        return tuple(marker for marker in raw.split(",") if marker)
    if name == "num_threads":
        return int(raw) if raw.strip() else None
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
