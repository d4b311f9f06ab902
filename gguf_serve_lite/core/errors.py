"""
Exception hierarchy for the inference engine.

Every failure surfaced to callers derives from EngineError so that the
outer layers can catch engine failures as a group. Where a failure has a
natural builtin counterpart (missing file, bad format, missing key) the
exception also derives from that builtin.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ModelFileNotFoundError(EngineError, FileNotFoundError):
    """The model file (or its resolved first shard) does not exist."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Model file not found: {path}")


class CorruptModelError(EngineError):
    """The model file is too small to be a complete model."""

    def __init__(self, path: str, size_mb: int, min_size_mb: int) -> None:
        self.path = path
        self.size_mb = size_mb
        self.min_size_mb = min_size_mb
        super().__init__(
            f"Model file is too small ({size_mb}MB < {min_size_mb}MB), "
            f"it is probably corrupt or only partially downloaded: {path}"
        )


class InvalidFormatError(EngineError, ValueError):
    """The file is not a readable GGUF file."""


class BackendInitError(EngineError):
    """The compute backend could not be initialized."""


class DeviceOutOfMemoryError(EngineError):
    """The accelerator ran out of memory while placing the model."""


class ModelLoadError(EngineError):
    """Loading failed on every attempted device.

    Attributes:
        path: Resolved model path.
        gpu_error: Failure of the GPU attempt, if one was made.
        cpu_error: Failure of the CPU attempt.
    """

    def __init__(
        self,
        path: str,
        cpu_error: BaseException,
        gpu_error: Optional[BaseException] = None,
    ) -> None:
        self.path = path
        self.gpu_error = gpu_error
        self.cpu_error = cpu_error
        if gpu_error is None:
            message = f"Failed to load model {path}: {cpu_error}"
        else:
            message = (
                f"Failed to load model {path}:\n"
                f"- GPU error: {gpu_error}\n"
                f"- CPU error: {cpu_error}"
            )
        super().__init__(message)


class TokenizationError(EngineError):
    """The prompt could not be converted to token ids."""


class PromptTooLongError(EngineError):
    """The tokenized prompt does not fit the requested context length."""

    def __init__(self, num_tokens: int, context_length: int) -> None:
        self.num_tokens = num_tokens
        self.context_length = context_length
        super().__init__(
            f"Prompt too long: {num_tokens} tokens (max: {context_length})"
        )


class DecodeError(EngineError):
    """A forward pass failed during prefill or generation."""


class DetokenizationError(EngineError):
    """A single generated token could not be converted back to text."""

    def __init__(self, token_id: int, reason: str) -> None:
        self.token_id = token_id
        super().__init__(f"Failed to decode token {token_id}: {reason}")


class ModelNotInPoolError(EngineError, KeyError):
    """No model is loaded under the requested key."""

    def __init__(self, model_key: str) -> None:
        self.model_key = model_key
        super().__init__(f"Model not found in pool: {model_key}")

    def __str__(self) -> str:
        return self.args[0]
