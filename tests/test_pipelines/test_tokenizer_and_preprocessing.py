"""Tests for VocabTokenizer and the Pillow image normalizer."""

import io
import json

import numpy as np
import pytest
from PIL import Image

from npu_assistant.errors import ConfigError, InferenceError
from npu_assistant.pipelines.preprocessing import PillowImageNormalizer, normalize_image
from npu_assistant.pipelines.tokenizer import Tokenizer, VocabTokenizer, load_tokenizer


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def test_encode_adds_bos_and_maps_unknown_to_unk():
    tokenizer = VocabTokenizer({"o": 10, "i": 11})

    ids, mask = tokenizer.encode("oi!")

    assert ids == [1, 10, 11, 3]
    assert mask == [1, 1, 1, 1]


def test_decode_skips_special_tokens():
    tokenizer = VocabTokenizer({"o": 10, "i": 11})

    assert tokenizer.decode([1, 10, 0, 11, 2]) == "oi"


def test_from_file_and_protocol(tmp_path):
    path = tmp_path / "vocab.json"
    path.write_text(json.dumps({"a": 5}), encoding="utf-8")

    tokenizer = VocabTokenizer.from_file(path)

    assert isinstance(tokenizer, Tokenizer)
    assert len(tokenizer) == 1


@pytest.mark.parametrize("content", ["{not json", '["a", "b"]', '{"a": "x"}'])
def test_invalid_vocabulary_raises_config_error(tmp_path, content):
    path = tmp_path / "vocab.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        VocabTokenizer.from_file(path)


def test_load_tokenizer_without_path_returns_empty_vocabulary():
    tokenizer = load_tokenizer(None)

    assert len(tokenizer) == 0
    assert tokenizer.encode("ab")[0] == [1, 3, 3]


def test_load_tokenizer_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="Could not load tokenizer"):
        load_tokenizer(str(tmp_path / "missing.json"))


# ---------------------------------------------------------------------------
# Image normalizer
# ---------------------------------------------------------------------------

def _image_bytes(color, size=(100, 50), fmt="PNG", mode="RGB"):
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def test_normalizer_produces_chw_float32():
    pixels = normalize_image(_image_bytes((255, 255, 255)), (384, 384))

    assert pixels.shape == (3, 384, 384)
    assert pixels.dtype == np.float32
    assert np.allclose(pixels, 1.0)


def test_normalizer_applies_mean_and_std():
    normalizer = PillowImageNormalizer(mean=(0.0, 0.0, 0.0), std=(1.0, 1.0, 1.0))

    pixels = normalizer(_image_bytes((255, 0, 0)), (8, 16))

    assert pixels.shape == (3, 8, 16)
    assert np.allclose(pixels[0], 1.0)
    assert np.allclose(pixels[1:], 0.0)


def test_normalizer_converts_grayscale_to_rgb():
    pixels = normalize_image(_image_bytes(0, mode="L", fmt="JPEG"), (32, 32))

    assert pixels.shape == (3, 32, 32)
    assert np.allclose(pixels, -1.0, atol=0.05)


def test_normalizer_rejects_garbage():
    with pytest.raises(InferenceError):
        normalize_image(b"\x00\x01garbage", (32, 32))


def test_normalizer_validates_arguments():
    with pytest.raises(ValueError):
        PillowImageNormalizer(mean=(0.5, 0.5))
    with pytest.raises(ValueError):
        PillowImageNormalizer(std=(0.5, 0.0, 0.5))
