"""
Acceleration provider selection for ONNX Runtime sessions.

``ProviderSelector.enable()`` tries to put a hardware execution provider
(DirectML on the NPU, CUDA, ROCm, ...) in front of the CPU provider on a
``SessionOptions`` object. It never fails the caller: when the provider is
unknown, not compiled into the installed onnxruntime, or raises while being
enabled, the options degrade to CPU-only execution and a ``ProviderEvent``
records the fallback.

Typical usage:

    selector = ProviderSelector()
    options = SessionOptions.create()
    outcome = selector.enable(options, "dml", model_id="vision")
    if outcome is ProviderOutcome.FELL_BACK:
        ...  # latency will be CPU-bound
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import onnxruntime as ort

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

PROVIDER_ALIASES = {
    "cpu": CPU_PROVIDER,
    "dml": "DmlExecutionProvider",
    "directml": "DmlExecutionProvider",
    "npu": "DmlExecutionProvider",
    "cuda": "CUDAExecutionProvider",
    "rocm": "ROCMExecutionProvider",
    "openvino": "OpenVINOExecutionProvider",
    "coreml": "CoreMLExecutionProvider",
}

_MAX_EVENTS = 256


class ProviderOutcome(str, Enum):
    """Result of trying to enable an execution provider."""
    ENABLED = "enabled"
    FELL_BACK = "fell_back"


def resolve_provider(kind: str) -> str:
    """
    Map a provider kind (``"dml"``, ``"cuda"``, ...) to its onnxruntime name.

    Full onnxruntime names (``"DmlExecutionProvider"``) pass through.

    Raises:
        ValueError: If the kind is empty or unrecognised
    """
    if not kind:
        raise ValueError("Provider kind must not be empty")
    if kind.endswith("ExecutionProvider"):
        return kind
    try:
        return PROVIDER_ALIASES[kind.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown provider kind: {kind}. "
            f"Known kinds: {', '.join(sorted(PROVIDER_ALIASES))}"
        ) from None


@dataclass
class SessionOptions:
    """
    Options a SessionHandle is opened with.

    Attributes:
        ort_options: Native ``onnxruntime.SessionOptions`` (may be None in tests)
        providers: Execution providers in priority order; CPU is always
            appended as the last resort by ``execution_providers()``
    """
    ort_options: Any = None
    providers: list[str] = field(default_factory=list)

    @classmethod
    def create(cls) -> "SessionOptions":
        """Create options with full graph optimisation enabled."""
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        return cls(ort_options=options)

    @property
    def accelerated(self) -> bool:
        """True when a non-CPU provider is configured."""
        return any(p != CPU_PROVIDER for p in self.providers)

    def execution_providers(self) -> list[str]:
        providers = [p for p in self.providers if p != CPU_PROVIDER]
        providers.append(CPU_PROVIDER)
        return providers

    def use_cpu_only(self) -> None:
        self.providers = [CPU_PROVIDER]


@dataclass(frozen=True)
class ProviderEvent:
    """Diagnostic emitted whenever a session's provider is decided."""
    requested: str
    provider: str
    outcome: ProviderOutcome
    model_id: Optional[str] = None
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def accelerated(self) -> bool:
        return self.provider != CPU_PROVIDER


ProviderListener = Callable[[ProviderEvent], Any]


class ProviderSelector:
    """
    Enables acceleration providers with transparent CPU fallback.

    Every decision is logged, appended to ``events`` (bounded), and passed
    to registered listeners so callers can tell accelerated sessions from
    CPU ones.
    """

    def __init__(
        self,
        available_providers: Optional[Callable[[], list[str]]] = None,
    ) -> None:
        """
        Args:
            available_providers: Callable returning the provider names the
                runtime supports. Defaults to
                ``onnxruntime.get_available_providers``.
        """
        self._available_providers = available_providers or ort.get_available_providers
        self._listeners: list[ProviderListener] = []
        self._lock = threading.Lock()
        self.events: deque[ProviderEvent] = deque(maxlen=_MAX_EVENTS)

    def add_listener(self, listener: ProviderListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ProviderListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def enable(
        self,
        options: SessionOptions,
        provider_kind: str,
        model_id: Optional[str] = None,
    ) -> ProviderOutcome:
        """
        Try to enable ``provider_kind`` on ``options``.

        Args:
            options: Options to mutate
            provider_kind: Provider kind or onnxruntime provider name
            model_id: Model the options are for (diagnostics only)

        Returns:
            ProviderOutcome.ENABLED, or ProviderOutcome.FELL_BACK when the
            options were degraded to CPU-only execution. Never raises.
        """
        try:
            name = resolve_provider(provider_kind)
            if name != CPU_PROVIDER:
                available = list(self._available_providers())
                if name not in available:
                    raise RuntimeError(
                        f"{name} not available (runtime offers: {', '.join(available)})"
                    )
            options.providers = [name] if name == CPU_PROVIDER else [name, CPU_PROVIDER]
        except Exception as exc:  # noqa: BLE001 - any failure degrades to CPU
            options.use_cpu_only()
            self._emit(
                ProviderEvent(
                    requested=provider_kind,
                    provider=CPU_PROVIDER,
                    outcome=ProviderOutcome.FELL_BACK,
                    model_id=model_id,
                    reason=str(exc),
                )
            )
            return ProviderOutcome.FELL_BACK

        self._emit(
            ProviderEvent(
                requested=provider_kind,
                provider=name,
                outcome=ProviderOutcome.ENABLED,
                model_id=model_id,
            )
        )
        return ProviderOutcome.ENABLED

    def report_fallback(
        self,
        options: SessionOptions,
        model_id: Optional[str],
        reason: str,
    ) -> None:
        """Record that an enabled provider failed at session creation."""
        requested = options.providers[0] if options.providers else CPU_PROVIDER
        options.use_cpu_only()
        self._emit(
            ProviderEvent(
                requested=requested,
                provider=CPU_PROVIDER,
                outcome=ProviderOutcome.FELL_BACK,
                model_id=model_id,
                reason=reason,
            )
        )

    def fallbacks(self, model_id: Optional[str] = None) -> list[ProviderEvent]:
        """Fallback events, optionally filtered by model."""
        return [
            e for e in list(self.events)
            if e.outcome is ProviderOutcome.FELL_BACK
            and (model_id is None or e.model_id == model_id)
        ]

    def _emit(self, event: ProviderEvent) -> None:
        if event.outcome is ProviderOutcome.FELL_BACK:
            logger.warning(
                "[Provider] %s unavailable for '%s', using CPU: %s",
                event.requested,
                event.model_id,
                event.reason,
            )
        else:
            logger.info(
                "[Provider] '%s' will run on %s", event.model_id, event.provider
            )

        with self._lock:
            self.events.append(event)
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001 - diagnostics must not break loads
                logger.warning("[Provider] Listener %r failed: %s", listener, exc)
