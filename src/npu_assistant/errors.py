"""
Error taxonomy for the NPU assistant.

Load and inference failures surface to the immediate caller as typed
exceptions. Provider fallback is not an error: it is reported through
``npu_assistant.runtime.providers.ProviderEvent`` diagnostics instead.

Hierarchy:

    AssistantError
    ├── LoadError            session could not be opened (model stays unloaded)
    │   └── ConfigError      bad/missing static configuration or unknown model id
    ├── InferenceError       native run failed (session remains usable)
    │   └── GenerationCancelled
    ├── ResourceError        releasing a native session failed (logged only)
    ├── SpeechError          TTS synthesis or playback failed
    └── CaptureError         screen capture failed
"""

from typing import Optional


class AssistantError(Exception):
    """Base class for all assistant errors."""

    def __init__(self, message: str, model_id: Optional[str] = None):
        super().__init__(message)
        self.model_id = model_id


class LoadError(AssistantError):
    """A model session could not be opened."""


class ConfigError(LoadError, ValueError):
    """Static configuration is missing, invalid, or names an unknown model."""


class InferenceError(AssistantError):
    """Native inference failed or its inputs did not match the model."""


class GenerationCancelled(InferenceError):
    """A caller cancelled generation before it completed."""


class ResourceError(AssistantError):
    """A native resource could not be released cleanly."""


class SpeechError(AssistantError):
    """Speech synthesis or audio playback failed."""


class CaptureError(AssistantError):
    """The screen could not be captured."""
