"""
Next-token sampling over a logits vector.

Order of operations: repetition penalty, then greedy shortcut (temperature
below 0.01), then temperature scaling, top-k, top-p, and a draw from the
renormalised distribution.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..errors import InferenceError

GREEDY_THRESHOLD = 0.01


@dataclass(frozen=True)
class SamplingParams:
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    repetition_penalty: float = 1.1

    @classmethod
    def for_temperature(cls, temperature: float) -> "SamplingParams":
        """Low temperatures narrow the candidate pool, high ones widen it."""
        if temperature < 0.3:
            return cls(temperature=temperature, top_k=10, top_p=0.5)
        if temperature > 0.8:
            return cls(temperature=temperature, top_k=100, top_p=0.98)
        return cls(temperature=temperature)

    @property
    def greedy(self) -> bool:
        return self.temperature < GREEDY_THRESHOLD


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


def apply_repetition_penalty(
    logits: np.ndarray, generated: Sequence[int], penalty: float
) -> np.ndarray:
    if penalty == 1.0 or not len(generated):
        return logits
    ids = np.unique(np.asarray(generated, dtype=np.int64))
    ids = ids[(ids >= 0) & (ids < logits.size)]
    values = logits[ids]
    logits[ids] = np.where(values > 0, values / penalty, values * penalty)
    return logits


def apply_top_k(logits: np.ndarray, k: int) -> np.ndarray:
    if k <= 0 or k >= logits.size:
        return logits
    kth = np.partition(logits, -k)[-k]
    logits[logits < kth] = -np.inf
    return logits


def apply_top_p(logits: np.ndarray, p: float) -> np.ndarray:
    if p <= 0 or p >= 1:
        return logits
    probs = softmax(logits)
    order = np.argsort(-probs)
    cumulative = np.cumsum(probs[order])
    keep = order[: int(np.searchsorted(cumulative, p)) + 1]
    mask = np.full(logits.shape, -np.inf)
    mask[keep] = logits[keep]
    return mask


def sample_next_token(
    logits: np.ndarray,
    params: SamplingParams,
    generated: Sequence[int] = (),
    rng: Optional[np.random.Generator] = None,
) -> int:
    """
    Pick the next token id from a 1-D logits vector.

    Raises:
        InferenceError: If the logits are empty, contain NaN, or mask out
            every token
    """
    logits = np.array(logits, dtype=np.float64).reshape(-1)
    if logits.size == 0:
        raise InferenceError("Model returned empty logits")
    # -inf entries are masks; NaN or +inf, or nothing finite at all, is a broken model.
    if np.isnan(logits).any() or np.isposinf(logits).any() or not np.isfinite(logits).any():
        raise InferenceError("Model returned non-finite logits")

    logits = apply_repetition_penalty(logits, generated, params.repetition_penalty)
    if params.greedy:
        return int(np.argmax(logits))

    logits = logits / params.temperature
    logits = apply_top_k(logits, params.top_k)
    logits = apply_top_p(logits, params.top_p)

    probs = softmax(logits)
    if not np.isfinite(probs).all():
        raise InferenceError("Model returned non-finite logits")

    rng = rng or np.random.default_rng()
    return int(rng.choice(logits.size, p=probs))
