"""
Idle eviction policy.

Selection only: the LifecycleManager re-checks every victim under that
model's lock before destroying anything.
"""

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class EvictionCandidate:
    """Snapshot of a resident model taken for one eviction pass."""
    model_id: str
    idle_seconds: float
    ref_count: int = 0
    persistent: bool = False


class IdleEvictionPolicy:
    """
    Evicts unreferenced, non-persistent models idle for ``unload_after``.

    An ``unload_after`` of 0 disables idle eviction entirely.
    """

    def __init__(self, unload_after: float):
        if unload_after < 0:
            raise ValueError(f"unload_after must be >= 0, got {unload_after}")
        self.unload_after = unload_after

    @property
    def enabled(self) -> bool:
        return self.unload_after > 0

    def is_eligible(self, candidate: EvictionCandidate) -> bool:
        # Models in use or pinned are never victims.
        if candidate.ref_count > 0 or candidate.persistent:
            return False
        return self.enabled and candidate.idle_seconds >= self.unload_after

    def select_victims(
        self,
        candidates: Iterable[EvictionCandidate],
        pressure: bool = False,
    ) -> list[str]:
        """
        Return ids of eligible candidates.

        Under memory pressure the most idle model comes first, so a caller
        that only needs to free one slot can stop early.
        """
        eligible = [c for c in candidates if self.is_eligible(c)]
        if pressure:
            eligible.sort(key=lambda c: c.idle_seconds, reverse=True)
        return [c.model_id for c in eligible]
