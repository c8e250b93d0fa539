"""Immutable model catalog built from static configuration."""

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from ..config import STT_MODEL_ID, AppConfig, ModelConfig
from ..errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    model_id: str
    config: ModelConfig
    persistent: bool = False


class ModelCatalog(Mapping[str, CatalogEntry]):
    """
    Read-only mapping of model id to CatalogEntry.

    The catalog never changes after construction, so lookups need no lock.
    """

    def __init__(self, models: Mapping[str, ModelConfig], persistent: Iterable[str] = ()):
        persistent = frozenset(persistent)
        for model_id in sorted(persistent - set(models)):
            logger.warning("[Catalog] Persistent model '%s' is not in the catalog", model_id)
        self._entries = MappingProxyType(
            {
                model_id: CatalogEntry(model_id, config, model_id in persistent)
                for model_id, config in models.items()
            }
        )

    @classmethod
    def from_config(cls, config: AppConfig, include_stt: bool = True) -> "ModelCatalog":
        """Build the catalog from configuration, adding the STT model as ``whisper``."""
        models = dict(config.models)
        if include_stt:
            models.setdefault(STT_MODEL_ID, config.stt_model())
        return cls(models, config.memory.persistent)

    def __getitem__(self, model_id: str) -> CatalogEntry:
        return self._entries[model_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, model_id: str) -> CatalogEntry:
        """
        Raises:
            ConfigError: If ``model_id`` is not in the catalog
        """
        try:
            return self._entries[model_id]
        except KeyError:
            raise ConfigError(
                f"Unknown model: {model_id}. Available: {', '.join(self._entries)}",
                model_id=model_id,
            ) from None

    def is_persistent(self, model_id: str) -> bool:
        return self.get_entry(model_id).persistent


def build_catalog(config: AppConfig, include_stt: bool = True) -> ModelCatalog:
    """Catalog of every configured model (plus ``whisper`` for speech)."""
    return ModelCatalog.from_config(config, include_stt=include_stt)
