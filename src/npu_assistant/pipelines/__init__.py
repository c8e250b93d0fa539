"""Inference pipelines: tokenization, preprocessing, sampling and decoding."""

from .decoding import autoregressive_decode, last_position_logits
from .preprocessing import ImageNormalizer, PillowImageNormalizer, normalize_image
from .sampling import SamplingParams, sample_next_token
from .text import TextPipeline, TokenizerCache
from .tokenizer import Tokenizer, VocabTokenizer, load_tokenizer
from .vision import VisionPipeline

__all__ = [
    "ImageNormalizer",
    "PillowImageNormalizer",
    "SamplingParams",
    "TextPipeline",
    "Tokenizer",
    "TokenizerCache",
    "VisionPipeline",
    "VocabTokenizer",
    "autoregressive_decode",
    "last_position_logits",
    "load_tokenizer",
    "normalize_image",
    "sample_next_token",
]
