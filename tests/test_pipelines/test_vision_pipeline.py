"""Tests for VisionPipeline - preprocessing, pixel validation and decoding."""

import io

import numpy as np
import pytest
from PIL import Image

from npu_assistant.errors import InferenceError
from npu_assistant.pipelines.text import TokenizerCache
from npu_assistant.pipelines.vision import VisionPipeline


def _png(size=(640, 480), color=(255, 255, 255)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def vision(make_manager, fake_tokenizer):
    def _make(**kwargs):
        manager = make_manager()
        pipeline = VisionPipeline(
            manager, tokenizers=TokenizerCache(lambda config: fake_tokenizer), **kwargs
        )
        return manager, pipeline
    return _make


def test_analyze_runs_with_fixed_image(vision, session_factory):
    manager, pipeline = vision()

    assert pipeline.analyze("vision", _png(), "o que tem na tela?") == "ok"

    seen = session_factory.sessions_for("vision")[0].feeds_seen
    assert all(shapes["pixel_values"] == (1, 3, 384, 384) for shapes in seen)
    assert manager.ref_count("vision") == 0


def test_pixel_shape_mismatch_is_rejected_before_running(vision, session_factory):
    manager, pipeline = vision(image_size=(224, 224))

    with pytest.raises(InferenceError, match="does not match"):
        pipeline.analyze("vision", _png(), "descreva")

    assert session_factory.sessions_for("vision")[0].runs == 0
    assert manager.ref_count("vision") == 0


def test_custom_normalizer_is_used(vision):
    calls = []

    def normalizer(image_bytes, size):
        calls.append(size)
        return np.zeros((3,) + size, dtype=np.float32)

    _, pipeline = vision(normalizer=normalizer)

    pipeline.analyze("vision", b"raw", "descreva")

    assert calls == [(384, 384)]


def test_undecodable_image_fails_before_loading(vision):
    manager, pipeline = vision()

    with pytest.raises(InferenceError, match="Could not decode image"):
        pipeline.analyze("vision", b"not an image", "descreva")

    assert manager.loaded_models() == []
