"""
Model runtime: provider selection, native sessions, and the lifecycle
manager that shares and evicts them.
"""

from .catalog import CatalogEntry, ModelCatalog, build_catalog
from .eviction import EvictionCandidate, IdleEvictionPolicy
from .manager import Lease, LifecycleManager, ModelStatus
from .providers import (
    CPU_PROVIDER,
    ProviderEvent,
    ProviderOutcome,
    ProviderSelector,
    SessionOptions,
    resolve_provider,
)
from .session import SessionHandle, SessionState

__all__ = [
    "CPU_PROVIDER",
    "CatalogEntry",
    "EvictionCandidate",
    "IdleEvictionPolicy",
    "Lease",
    "LifecycleManager",
    "ModelCatalog",
    "ModelStatus",
    "ProviderEvent",
    "ProviderOutcome",
    "ProviderSelector",
    "SessionHandle",
    "SessionOptions",
    "SessionState",
    "build_catalog",
    "resolve_provider",
]
