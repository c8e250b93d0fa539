"""Image + prompt -> text over a leased vision model."""

import logging
import threading
from typing import Optional

import numpy as np

from ..errors import InferenceError
from ..runtime.manager import Lease, LifecycleManager
from .decoding import autoregressive_decode
from .preprocessing import DEFAULT_IMAGE_SIZE, ImageNormalizer, normalize_image
from .sampling import SamplingParams
from .text import TokenizerCache

logger = logging.getLogger(__name__)

PIXEL_INPUT = "pixel_values"


class VisionPipeline:
    def __init__(
        self,
        manager: LifecycleManager,
        normalizer: Optional[ImageNormalizer] = None,
        image_size: tuple[int, int] = DEFAULT_IMAGE_SIZE,
        tokenizers: Optional[TokenizerCache] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.manager = manager
        self.normalizer = normalizer or normalize_image
        self.image_size = image_size
        self.tokenizers = tokenizers or TokenizerCache()
        self._rng = rng

    def analyze(
        self,
        model_id: str,
        image_bytes: bytes,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Describe ``image_bytes`` in answer to ``prompt``.

        The image is preprocessed before the lease is taken and checked
        against the session's declared pixel shape once it is.

        Raises:
            ConfigError: Unknown model or bad tokenizer
            LoadError: The model could not be loaded
            InferenceError: Undecodable image, pixel shape mismatch, or a
                failed decode step
            GenerationCancelled: ``cancel_event`` was set
        """
        config = self.manager.catalog.get_entry(model_id).config
        pixels = self.normalizer(image_bytes, self.image_size)[np.newaxis, ...]
        tokenizer = self.tokenizers.get(model_id, config)
        input_ids, _ = tokenizer.encode(prompt)

        with self.manager.acquire(model_id) as lease:
            self._check_pixels(lease, pixels)
            generated = autoregressive_decode(
                lambda ids: self._step(lease, pixels, ids),
                input_ids,
                max_tokens=config.max_tokens,
                eos_token_id=tokenizer.eos_token_id,
                params=SamplingParams.for_temperature(config.temperature),
                cancel_event=cancel_event,
                rng=self._rng,
            )
        return tokenizer.decode(generated).strip()

    def _check_pixels(self, lease: Lease, pixels: np.ndarray) -> None:
        declared = lease.session.input_shapes.get(PIXEL_INPUT)
        if declared is None:
            return
        if len(declared) != pixels.ndim or any(
            want is not None and want != got for want, got in zip(declared, pixels.shape)
        ):
            raise InferenceError(
                f"Image tensor {tuple(pixels.shape)} does not match "
                f"{lease.model_id} input {declared}",
                model_id=lease.model_id,
            )

    def _step(self, lease: Lease, pixels: np.ndarray, ids: list[int]) -> np.ndarray:
        available = {
            PIXEL_INPUT: pixels,
            "input_ids": np.asarray([ids], dtype=np.int64),
            "attention_mask": np.ones((1, len(ids)), dtype=np.int64),
        }
        feeds = {}
        try:
            for name in lease.config.input_names:
                if name not in available:
                    raise InferenceError(
                        f"Vision pipeline cannot supply input '{name}'", model_id=lease.model_id
                    )
                feeds[name] = available[name]
            outputs = lease.run(feeds)
        finally:
            feeds.clear()
            available.clear()
        return outputs[lease.config.output_names[0]]
