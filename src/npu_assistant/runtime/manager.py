"""
Lifecycle manager - loads, shares and evicts model sessions on demand.

Every catalog model is in one of four states:

    UNLOADED --acquire--> LOADING --ok--> RESIDENT --evict--> EVICTING --> UNLOADED
                             |
                             +--fail--> UNLOADED

Callers obtain a ``Lease`` with ``acquire()`` and must release it (or use
it as a context manager). While any lease on a model is outstanding the
model cannot be evicted. Concurrent acquires of an unloaded model share a
single load. Idle, unreferenced, non-persistent models are destroyed by
``evict_idle()``, which a background thread calls every
``MemoryPolicy.check_interval`` seconds once ``start()`` has run.

Typical usage:

    manager = LifecycleManager(ModelCatalog.from_config(config), config.memory)
    manager.startup()
    with manager.acquire("phi") as lease:
        outputs = lease.run(feeds)
    manager.shutdown()
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np

from ..config import MemoryPolicy, ModelConfig
from ..errors import InferenceError, LoadError, ResourceError
from .catalog import CatalogEntry, ModelCatalog
from .eviction import EvictionCandidate, IdleEvictionPolicy
from .providers import ProviderSelector, SessionOptions
from .session import SessionFactory, SessionHandle

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class ModelStatus(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    RESIDENT = "resident"
    EVICTING = "evicting"


@dataclass(eq=False)
class ModelState:
    """Mutable per-model record. Every field is guarded by ``cond``."""
    model_id: str
    status: ModelStatus = ModelStatus.UNLOADED
    ref_count: int = 0
    last_release: Optional[float] = None
    session: Optional[SessionHandle] = None
    loads: int = 0
    evictions: int = 0
    load_attempts: int = 0
    cond: threading.Condition = field(default_factory=threading.Condition, repr=False)


class Lease:
    """A caller's claim on a resident model. Release exactly once."""

    def __init__(self, manager: "LifecycleManager", entry: CatalogEntry, session: SessionHandle):
        self._manager = manager
        self._entry = entry
        self._session = session
        self._released = False
        self._lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return self._entry.model_id

    @property
    def config(self) -> ModelConfig:
        return self._entry.config

    @property
    def session(self) -> SessionHandle:
        return self._session

    @property
    def released(self) -> bool:
        return self._released

    def run(self, feeds: Mapping[str, np.ndarray]) -> dict[str, np.ndarray]:
        if self._released:
            raise InferenceError(f"Lease on {self.model_id} already released", model_id=self.model_id)
        return self._session.run(feeds)

    def release(self) -> None:
        """Return the lease. A second call is a no-op."""
        with self._lock:
            if self._released:
                return
            self._released = True
        self._manager._release(self.model_id)

    def __enter__(self) -> "Lease":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False

    def __repr__(self) -> str:
        return f"Lease(model_id={self.model_id!r}, released={self._released})"


class LifecycleManager:
    """
    Owns every model session and decides when it is loaded and destroyed.

    Locks are per model: loading one model never blocks leases on
    another, and native session creation/destruction happens outside
    any lock.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        policy: Optional[MemoryPolicy] = None,
        selector: Optional[ProviderSelector] = None,
        session_factory: Optional[SessionFactory] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        """
        Args:
            catalog: Models this manager may load
            policy: Idle-unload policy (defaults to ``MemoryPolicy()``)
            selector: Provider selector shared by all sessions
            session_factory: Native session constructor, defaults to
                ``onnxruntime.InferenceSession``
            clock: Monotonic time source used for idle accounting
        """
        self.catalog = catalog
        self.policy = policy or MemoryPolicy()
        self.selector = selector or ProviderSelector()
        self._session_factory = session_factory
        self._clock = clock
        self._eviction = IdleEvictionPolicy(self.policy.unload_after)
        self._states = {model_id: ModelState(model_id) for model_id in catalog}

        self._lock = threading.Lock()
        self._closed = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def acquire(self, model_id: str) -> Lease:
        """
        Return a lease on ``model_id``, loading it first if needed.

        Blocks while another caller is loading or evicting the same model.

        Raises:
            ConfigError: Unknown model id
            LoadError: The session could not be opened, or the manager is
                shut down. The model stays UNLOADED and can be retried.
        """
        entry = self.catalog.get_entry(model_id)
        state = self._states[model_id]

        with state.cond:
            while True:
                if self._closed:
                    raise LoadError("LifecycleManager is shut down", model_id=model_id)
                if state.status is ModelStatus.RESIDENT:
                    state.ref_count += 1
                    return Lease(self, entry, state.session)
                if state.status is ModelStatus.UNLOADED:
                    state.status = ModelStatus.LOADING
                    state.load_attempts += 1
                    break
                state.cond.wait()

        return self._load(entry, state)

    def _load(self, entry: CatalogEntry, state: ModelState) -> Lease:
        model_id = entry.model_id
        try:
            self.evict_idle(pressure=True)
        except Exception as exc:  # noqa: BLE001 - opportunistic pass only
            logger.warning("[Lifecycle] Pre-load eviction pass failed: %s", exc)

        logger.info("[Lifecycle] Loading '%s' from %s", model_id, entry.config.path)
        t0 = time.time()
        try:
            session = self._open(entry)
        except LoadError as exc:
            self._abort_load(state)
            logger.error("[Lifecycle] Failed to load '%s': %s", model_id, exc)
            raise
        except Exception as exc:
            self._abort_load(state)
            logger.error("[Lifecycle] Failed to load '%s': %s", model_id, exc)
            raise LoadError(f"Failed to load {model_id}: {exc}", model_id=model_id) from exc
        except BaseException:
            self._abort_load(state)
            raise

        with state.cond:
            if self._closed:
                state.status = ModelStatus.UNLOADED
                state.cond.notify_all()
                closed = True
            else:
                state.session = session
                state.status = ModelStatus.RESIDENT
                state.ref_count += 1
                state.loads += 1
                state.cond.notify_all()
                closed = False

        if closed:
            self._destroy(model_id, session)
            raise LoadError("LifecycleManager shut down during load", model_id=model_id)

        logger.info(
            "[Lifecycle] '%s' resident on %s in %.1fs",
            model_id,
            session.provider,
            time.time() - t0,
        )
        return Lease(self, entry, session)

    def _abort_load(self, state: ModelState) -> None:
        # Waiters wake up, see UNLOADED and make their own attempt.
        with state.cond:
            state.status = ModelStatus.UNLOADED
            state.cond.notify_all()

    def _open(self, entry: CatalogEntry) -> SessionHandle:
        config = entry.config
        options = SessionOptions.create()
        self.selector.enable(options, config.provider, model_id=entry.model_id)
        return SessionHandle.open(
            config.path,
            config.input_names,
            config.output_names,
            options,
            model_id=entry.model_id,
            selector=self.selector,
            session_factory=self._session_factory,
        )

    def release(self, lease: Lease) -> None:
        """Return ``lease``; the model is only marked idle, never destroyed here."""
        lease.release()

    def _release(self, model_id: str) -> None:
        state = self._states[model_id]
        with state.cond:
            if state.ref_count <= 0:
                logger.warning("[Lifecycle] Release of '%s' with no outstanding lease", model_id)
                return
            state.ref_count -= 1
            if state.ref_count == 0:
                state.last_release = self._clock()
            state.cond.notify_all()

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _candidate(self, state: ModelState, now: float) -> EvictionCandidate:
        last = state.last_release if state.last_release is not None else now
        return EvictionCandidate(
            model_id=state.model_id,
            idle_seconds=max(0.0, now - last),
            ref_count=state.ref_count,
            persistent=self.catalog[state.model_id].persistent,
        )

    def evict_idle(self, now: Optional[float] = None, pressure: bool = False) -> list[str]:
        """
        Destroy every resident model the idle policy selects.

        Args:
            now: Clock reading to measure idleness against (defaults to
                the manager's clock)
            pressure: Order victims most-idle first

        Returns:
            Ids of the models actually evicted
        """
        now = self._clock() if now is None else now
        candidates = []
        for state in self._states.values():
            with state.cond:
                if state.status is ModelStatus.RESIDENT:
                    candidates.append(self._candidate(state, now))

        evicted = []
        for model_id in self._eviction.select_victims(candidates, pressure=pressure):
            if self._evict(model_id, now=now):
                evicted.append(model_id)
        return evicted

    def unload(self, model_id: str) -> bool:
        """
        Evict ``model_id`` now, ignoring idleness and persistence.

        Returns:
            False if the model is not resident or still has leases
        """
        self.catalog.get_entry(model_id)
        return self._evict(model_id, now=None)

    def _evict(self, model_id: str, now: Optional[float]) -> bool:
        state = self._states[model_id]
        with state.cond:
            # An acquire may have raced the selection; re-check under the lock.
            if state.status is not ModelStatus.RESIDENT or state.ref_count > 0:
                return False
            if now is not None and not self._eviction.is_eligible(self._candidate(state, now)):
                return False
            state.status = ModelStatus.EVICTING
            session, state.session = state.session, None

        try:
            self._destroy(model_id, session)
        finally:
            with state.cond:
                state.status = ModelStatus.UNLOADED
                state.last_release = None
                state.evictions += 1
                state.cond.notify_all()
        logger.info("[Lifecycle] Evicted '%s'", model_id)
        return True

    def _destroy(self, model_id: str, session: Optional[SessionHandle]) -> None:
        if session is None:
            return
        try:
            session.destroy()
        except ResourceError as exc:
            logger.error("[Lifecycle] Failed to release '%s': %s", model_id, exc)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def startup(self) -> dict[str, LoadError]:
        """
        Preload every model when ``policy.load_all`` is set, then start the
        background eviction thread.

        Returns:
            Load failures keyed by model id. A failed preload is not fatal.
        """
        failures: dict[str, LoadError] = {}
        if self.policy.load_all:
            for model_id in self.catalog:
                try:
                    lease = self.acquire(model_id)
                except LoadError as exc:
                    failures[model_id] = exc
                    continue
                lease.release()
        self.start()
        return failures

    def start(self) -> None:
        """Start the background eviction thread (no-op if eviction is off)."""
        with self._lock:
            if self._thread is not None or self._closed or not self._eviction.enabled:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._eviction_loop, name="lifecycle-eviction", daemon=True
            )
            self._thread.start()

    def _eviction_loop(self) -> None:
        while not self._stop_event.wait(self.policy.check_interval):
            try:
                evicted = self.evict_idle()
            except Exception:  # noqa: BLE001 - keep the thread alive
                logger.exception("[Lifecycle] Eviction pass failed")
                continue
            if evicted:
                logger.debug("[Lifecycle] Idle pass evicted %s", evicted)

    def shutdown(self, drain_timeout: float = 5.0) -> None:
        """
        Stop the eviction thread and destroy every session.

        Waits up to ``drain_timeout`` seconds per model for outstanding
        leases; sessions still leased after that are destroyed anyway
        (the session waits for an in-flight run). Idempotent.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread, self._thread = self._thread, None
        self._stop_event.set()
        if thread is not None:
            thread.join(timeout=self.policy.check_interval + 1)

        for model_id, state in self._states.items():
            with state.cond:
                deadline = time.monotonic() + drain_timeout
                while state.status is ModelStatus.LOADING or state.ref_count > 0:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    state.cond.wait(remaining)
                if state.ref_count > 0:
                    logger.warning(
                        "[Lifecycle] Destroying '%s' with %d outstanding lease(s)",
                        model_id,
                        state.ref_count,
                    )
                session, state.session = state.session, None
                was_resident = state.status is ModelStatus.RESIDENT
                if was_resident:
                    state.status = ModelStatus.UNLOADED
                    state.ref_count = 0
                    state.cond.notify_all()
            if was_resident:
                self._destroy(model_id, session)
        logger.info("[Lifecycle] Shut down")

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "LifecycleManager":
        self.startup()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.shutdown()
        return False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def state_of(self, model_id: str) -> ModelStatus:
        self.catalog.get_entry(model_id)
        state = self._states[model_id]
        with state.cond:
            return state.status

    def ref_count(self, model_id: str) -> int:
        self.catalog.get_entry(model_id)
        state = self._states[model_id]
        with state.cond:
            return state.ref_count

    def load_count(self, model_id: str) -> int:
        """Number of successful loads of ``model_id`` since construction."""
        self.catalog.get_entry(model_id)
        state = self._states[model_id]
        with state.cond:
            return state.loads

    def loaded_models(self) -> list[str]:
        return [m for m in self._states if self.state_of(m) is ModelStatus.RESIDENT]

    def stats(self) -> dict[str, Any]:
        """Snapshot of every model's state for logging and the CLI."""
        now = self._clock()
        models = {}
        for model_id, state in self._states.items():
            with state.cond:
                idle = None
                if state.status is ModelStatus.RESIDENT and state.ref_count == 0:
                    idle = self._candidate(state, now).idle_seconds
                models[model_id] = {
                    "state": state.status.value,
                    "ref_count": state.ref_count,
                    "idle_seconds": idle,
                    "persistent": self.catalog[model_id].persistent,
                    "provider": state.session.provider if state.session else None,
                    "loads": state.loads,
                    "load_attempts": state.load_attempts,
                    "evictions": state.evictions,
                }
        loaded = [m for m, s in models.items() if s["state"] == ModelStatus.RESIDENT.value]
        return {"loaded_models": loaded, "total_loaded": len(loaded), "models": models}
