"""Screen capture for the vision pipeline, backed by Pillow's ImageGrab."""

import io
import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional, Protocol, Union, runtime_checkable

from PIL import Image, ImageGrab

from ..errors import CaptureError

logger = logging.getLogger(__name__)


@runtime_checkable
class ScreenCapture(Protocol):
    def capture_screen(self) -> bytes:
        """Return the current screen as PNG bytes."""
        ...


class PillowScreenCapture:
    """
    ``ImageGrab.grab()`` wrapped to return PNG bytes.

    Args:
        all_screens: Capture every monitor (Windows only)
        xdisplay: X11 display to grab from (Linux)
        grab: Replacement for ``ImageGrab.grab``
    """

    def __init__(
        self,
        all_screens: bool = False,
        xdisplay: Optional[str] = None,
        grab: Optional[Callable[..., Any]] = None,
    ):
        self.all_screens = all_screens
        self.xdisplay = xdisplay
        self._grab = grab or ImageGrab.grab

    def capture_screen(self) -> bytes:
        kwargs: dict[str, Any] = {}
        if self.all_screens:
            kwargs["all_screens"] = True
        if self.xdisplay:
            kwargs["xdisplay"] = self.xdisplay
        try:
            image = self._grab(**kwargs)
        except (OSError, ValueError) as exc:
            raise CaptureError(f"Screen capture failed: {exc}") from exc
        if image is None:
            raise CaptureError("Screen capture returned no image")
        return _to_png(image)


class FileImageCapture:
    """Serves a fixed image file instead of the screen (headless hosts)."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def capture_screen(self) -> bytes:
        try:
            with Image.open(self.path) as image:
                return _to_png(image)
        except OSError as exc:
            raise CaptureError(f"Cannot read image {self.path}: {exc}") from exc


def _to_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def get_screen_capture(platform: Optional[str] = None) -> ScreenCapture:
    """
    Capture implementation for ``platform`` (defaults to ``sys.platform``).

    Raises:
        CaptureError: If the platform has no supported capture backend
    """
    platform = platform or sys.platform
    if platform.startswith("win"):
        return PillowScreenCapture(all_screens=True)
    if platform == "darwin":
        return PillowScreenCapture()
    if platform.startswith("linux"):
        display = os.getenv("DISPLAY")
        if not display:
            raise CaptureError("No X11 display available (DISPLAY is not set)")
        return PillowScreenCapture(xdisplay=display)
    raise CaptureError(f"Screen capture is not supported on {platform}")
