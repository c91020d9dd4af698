"""Inference engines: model backends and their load/unload lifecycle."""

from engines.backends import LiteLLMBackend, MockBackend, ModelBackend
from engines.lifecycle import (
    EngineHandle,
    EnginePool,
    EngineStateError,
    EngineStatus,
)

__all__ = [
    "EngineHandle",
    "EnginePool",
    "EngineStateError",
    "EngineStatus",
    "LiteLLMBackend",
    "MockBackend",
    "ModelBackend",
]
