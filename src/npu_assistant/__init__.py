"""
NPU Assistant - Core Package

A local voice/vision assistant that keeps several ONNX models on a single
accelerator, loading them on demand and evicting them when idle.

This package provides:
- Runtime layer: provider selection, sessions and the lifecycle manager
- Pipelines for text generation and image analysis
- Collaborators for speech output and screen capture
- Service layer for intent routing
"""

__version__ = "0.1.0"

from .config import AppConfig, MemoryPolicy, ModelConfig, load_config
from .errors import (
    AssistantError,
    CaptureError,
    ConfigError,
    GenerationCancelled,
    InferenceError,
    LoadError,
    ResourceError,
    SpeechError,
)
from .runtime import LifecycleManager, ModelCatalog, build_catalog

from . import collaborators
from . import pipelines
from . import runtime
from . import services
from . import utils

__all__ = [
    "AppConfig",
    "AssistantError",
    "CaptureError",
    "ConfigError",
    "GenerationCancelled",
    "InferenceError",
    "LifecycleManager",
    "LoadError",
    "MemoryPolicy",
    "ModelCatalog",
    "ModelConfig",
    "ResourceError",
    "SpeechError",
    "build_catalog",
    "collaborators",
    "load_config",
    "pipelines",
    "runtime",
    "services",
    "utils",
]
