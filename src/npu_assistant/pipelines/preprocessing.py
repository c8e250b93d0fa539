"""Image preprocessing for vision models (Pillow + numpy)."""

import io
from collections.abc import Sequence
from typing import Protocol

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..errors import InferenceError

DEFAULT_IMAGE_SIZE = (384, 384)
DEFAULT_MEAN = (0.5, 0.5, 0.5)
DEFAULT_STD = (0.5, 0.5, 0.5)


class ImageNormalizer(Protocol):
    def __call__(self, image_bytes: bytes, size: tuple[int, int]) -> np.ndarray:
        """Return a float32 CHW tensor of spatial ``size`` (height, width)."""
        ...


class PillowImageNormalizer:
    """
    Decode -> RGB -> resize -> scale to [0, 1] -> (x - mean) / std -> CHW.

    Args:
        mean: Per-channel mean subtracted after scaling
        std: Per-channel standard deviation divided out
    """

    def __init__(
        self,
        mean: Sequence[float] = DEFAULT_MEAN,
        std: Sequence[float] = DEFAULT_STD,
    ):
        if len(mean) != 3 or len(std) != 3:
            raise ValueError("mean and std must have three channels")
        if any(s <= 0 for s in std):
            raise ValueError("std values must be > 0")
        self.mean = np.asarray(mean, dtype=np.float32)
        self.std = np.asarray(std, dtype=np.float32)

    def __call__(self, image_bytes: bytes, size: tuple[int, int] = DEFAULT_IMAGE_SIZE) -> np.ndarray:
        height, width = size
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                rgb = image.convert("RGB").resize((width, height), Image.Resampling.BICUBIC)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise InferenceError(f"Could not decode image: {exc}") from exc

        pixels = np.asarray(rgb, dtype=np.float32) / 255.0
        pixels = (pixels - self.mean) / self.std
        return np.ascontiguousarray(pixels.transpose(2, 0, 1), dtype=np.float32)


normalize_image = PillowImageNormalizer()
