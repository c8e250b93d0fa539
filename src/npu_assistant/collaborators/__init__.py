"""Collaborators outside the model runtime: speech output and screen capture."""

from .capture import FileImageCapture, PillowScreenCapture, ScreenCapture, get_screen_capture
from .speech import PiperSpeaker, SpeechResult, SpeechTask, list_available_voices

__all__ = [
    "FileImageCapture",
    "PiperSpeaker",
    "PillowScreenCapture",
    "ScreenCapture",
    "SpeechResult",
    "SpeechTask",
    "get_screen_capture",
    "list_available_voices",
]
