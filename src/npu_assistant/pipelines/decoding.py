"""Autoregressive decode loop shared by the text and vision pipelines."""

import logging
import threading
from collections.abc import Callable, Sequence
from typing import Optional

import numpy as np

from ..errors import GenerationCancelled, InferenceError
from .sampling import SamplingParams, sample_next_token

logger = logging.getLogger(__name__)

# ids so far -> logits for the whole sequence
StepFn = Callable[[list[int]], np.ndarray]


def last_position_logits(logits: np.ndarray) -> np.ndarray:
    """
    Logits for the final sequence position.

    Accepts ``(batch, seq, vocab)``, ``(batch, vocab)`` or ``(vocab,)``
    with a batch of one.
    """
    logits = np.asarray(logits)
    if logits.ndim == 3 and logits.shape[0] == 1 and logits.shape[1] > 0:
        return logits[0, -1]
    if logits.ndim == 2 and logits.shape[0] == 1:
        return logits[0]
    if logits.ndim == 1:
        return logits
    raise InferenceError(f"Unexpected logits shape {logits.shape}")


def autoregressive_decode(
    step: StepFn,
    input_ids: Sequence[int],
    max_tokens: int,
    eos_token_id: int,
    params: SamplingParams,
    cancel_event: Optional[threading.Event] = None,
    rng: Optional[np.random.Generator] = None,
) -> list[int]:
    """
    Generate up to ``max_tokens`` ids, stopping early at EOS.

    The EOS id itself is not included in the result.

    Raises:
        GenerationCancelled: ``cancel_event`` was set between steps
        InferenceError: A step failed
    """
    ids = list(input_ids)
    generated: list[int] = []
    for _ in range(max_tokens):
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled(f"Generation cancelled after {len(generated)} tokens")
        token = sample_next_token(last_position_logits(step(ids)), params, generated, rng)
        if token == eos_token_id:
            break
        generated.append(token)
        ids.append(token)
    logger.debug("[Decode] Generated %d token(s)", len(generated))
    return generated
