"""Service layer: intent routing and the async assistant facade."""

from .assistant import AssistantResponse, AssistantService
from .router import MODEL_FOR_INTENT, Intent, detect_intent

__all__ = [
    "AssistantResponse",
    "AssistantService",
    "Intent",
    "MODEL_FOR_INTENT",
    "detect_intent",
]
