"""
Tokenizers used by the text and vision pipelines.

``VocabTokenizer`` is a character-level tokenizer over a JSON vocabulary
(``{"a": 17, ...}``). It is enough to drive models exported with a
character vocabulary; anything else can plug in its own object that
satisfies the ``Tokenizer`` protocol.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

from ..errors import ConfigError

logger = logging.getLogger(__name__)

PAD_TOKEN_ID = 0
BOS_TOKEN_ID = 1
EOS_TOKEN_ID = 2
UNK_TOKEN_ID = 3


@runtime_checkable
class Tokenizer(Protocol):
    """What the pipelines need from a tokenizer."""

    eos_token_id: int

    def encode(self, text: str) -> tuple[list[int], list[int]]:
        """Return ``(input_ids, attention_mask)`` for ``text``."""
        ...

    def decode(self, ids: Sequence[int]) -> str:
        """Return the text for ``ids``, skipping special tokens."""
        ...


class VocabTokenizer:
    """Character-level tokenizer backed by a token -> id vocabulary."""

    def __init__(
        self,
        vocab: Optional[Mapping[str, int]] = None,
        bos_token_id: int = BOS_TOKEN_ID,
        eos_token_id: int = EOS_TOKEN_ID,
        pad_token_id: int = PAD_TOKEN_ID,
        unk_token_id: int = UNK_TOKEN_ID,
    ):
        self.vocab = dict(vocab or {})
        self.bos_token_id = bos_token_id
        self.eos_token_id = eos_token_id
        self.pad_token_id = pad_token_id
        self.unk_token_id = unk_token_id
        self._reverse = {token_id: token for token, token_id in self.vocab.items()}
        self._special = {bos_token_id, eos_token_id, pad_token_id}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "VocabTokenizer":
        """
        Load a JSON vocabulary file.

        Raises:
            ConfigError: If the file is missing or not a JSON object of ints
        """
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as handle:
                vocab = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Could not load tokenizer {path}: {exc}") from exc
        if not isinstance(vocab, dict) or not all(isinstance(v, int) for v in vocab.values()):
            raise ConfigError(f"Tokenizer {path} must map tokens to integer ids")
        return cls(vocab)

    def encode(self, text: str) -> tuple[list[int], list[int]]:
        ids = [self.bos_token_id]
        ids.extend(self.vocab.get(char, self.unk_token_id) for char in text)
        return ids, [1] * len(ids)

    def decode(self, ids: Sequence[int]) -> str:
        return "".join(
            self._reverse.get(int(token_id), "")
            for token_id in ids
            if int(token_id) not in self._special
        )

    def __len__(self) -> int:
        return len(self.vocab)


def load_tokenizer(path: Optional[str]) -> VocabTokenizer:
    """Tokenizer for a model's ``tokenizer_path``; empty vocabulary if unset."""
    if not path:
        logger.warning("[Tokenizer] No vocabulary configured, every character maps to UNK")
        return VocabTokenizer()
    return VocabTokenizer.from_file(path)
