"""
Core inference engine module.

Provides the main API and orchestrates all components:
- InferenceEngine: Service object owning the model pool
- InferenceSession: Single-request prefill and decode loop
- EngineConfig: Engine configuration and parameters
- errors: Exception hierarchy rooted at EngineError

Submodules are imported directly (e.g. ``gguf_serve_lite.core.config``)
so that lower layers can depend on config and errors without importing
the engine.
"""

__all__ = []
