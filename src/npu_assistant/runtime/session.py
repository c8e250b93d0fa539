"""
Exclusive ownership of one native ONNX Runtime inference session.

A SessionHandle goes CREATED -> ACTIVE -> DESTROYED and never back.
``destroy()`` is idempotent; ``run()`` on a destroyed handle raises
InferenceError. Native runs are serialised per handle because an
onnxruntime session is not used concurrently here.
"""

import gc
import logging
import os
import threading
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import onnxruntime as ort

from ..errors import InferenceError, LoadError, ResourceError
from .providers import CPU_PROVIDER, ProviderSelector, SessionOptions

logger = logging.getLogger(__name__)

# (path, sess_options=..., providers=[...]) -> native session
SessionFactory = Callable[..., Any]

_ORT_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(int8)": np.int8,
    "tensor(uint8)": np.uint8,
    "tensor(bool)": np.bool_,
}


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    DESTROYED = "destroyed"


def _static_shape(shape: Optional[Sequence[Any]]) -> Optional[tuple[Optional[int], ...]]:
    """Declared shape with symbolic dimensions replaced by None."""
    if shape is None:
        return None
    return tuple(dim if isinstance(dim, int) and dim > 0 else None for dim in shape)


class SessionHandle:
    """
    Owns a native inference session plus its declared tensor metadata.

    Use ``SessionHandle.open()`` rather than the constructor.
    """

    def __init__(
        self,
        native: Any,
        input_names: Sequence[str],
        output_names: Sequence[str],
        provider: str,
        model_id: Optional[str] = None,
        path: Optional[str] = None,
    ):
        self.model_id = model_id
        self.path = path
        self.provider = provider
        self.input_names = tuple(input_names)
        self.output_names = tuple(output_names)
        self.input_shapes: dict[str, Optional[tuple[Optional[int], ...]]] = {}
        self.input_types: dict[str, Optional[str]] = {}
        self.state = SessionState.CREATED
        self._native = native
        self._lock = threading.Lock()

    @property
    def accelerated(self) -> bool:
        return self.provider != CPU_PROVIDER

    @classmethod
    def open(
        cls,
        path: Union[str, Path],
        input_names: Sequence[str],
        output_names: Sequence[str],
        options: SessionOptions,
        *,
        model_id: Optional[str] = None,
        selector: Optional[ProviderSelector] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> "SessionHandle":
        """
        Open a session over the model file at ``path``.

        When an accelerated provider was enabled on ``options`` but session
        creation fails with it, the open is retried once on CPU and the
        fallback is reported through ``selector``. The same report is made
        when the runtime accepts the session but silently places it on CPU.

        Raises:
            LoadError: File missing or unreadable, the runtime rejects the
                model, or a declared tensor name is absent from the model
        """
        path = Path(path)
        if not path.is_file():
            raise LoadError(f"Model file not found: {path}", model_id=model_id)
        if not os.access(path, os.R_OK):
            raise LoadError(f"Model file not readable: {path}", model_id=model_id)

        factory = session_factory or ort.InferenceSession
        providers = options.execution_providers()
        try:
            native = factory(str(path), sess_options=options.ort_options, providers=providers)
        except Exception as exc:
            if not options.accelerated:
                raise LoadError(f"Failed to open {path}: {exc}", model_id=model_id) from exc
            reason = f"session creation failed on {providers[0]}: {exc}"
            if selector is not None:
                selector.report_fallback(options, model_id, reason)
            else:
                logger.warning("[Session] %s, retrying on CPU", reason)
                options.use_cpu_only()
            providers = options.execution_providers()
            try:
                native = factory(str(path), sess_options=options.ort_options, providers=providers)
            except Exception as cpu_exc:
                raise LoadError(
                    f"Failed to open {path} on CPU: {cpu_exc}", model_id=model_id
                ) from cpu_exc

        handle = cls(
            native,
            input_names,
            output_names,
            provider=providers[0],
            model_id=model_id,
            path=str(path),
        )
        try:
            handle._read_metadata()
        except LoadError:
            handle._discard()
            raise
        except Exception as exc:
            handle._discard()
            raise LoadError(
                f"Failed to read model metadata from {path}: {exc}", model_id=model_id
            ) from exc
        if options.accelerated and not handle.accelerated:
            reason = f"runtime placed the session on {handle.provider} instead of {providers[0]}"
            if selector is not None:
                selector.report_fallback(options, model_id, reason)
            else:
                logger.warning("[Session] %s", reason)
        handle.state = SessionState.ACTIVE
        logger.debug("[Session] Opened %s (%s) on %s", model_id, path, handle.provider)
        return handle

    def _read_metadata(self) -> None:
        # onnxruntime silently drops providers it cannot use; record the one it kept.
        get_providers = getattr(self._native, "get_providers", None)
        if callable(get_providers):
            active = get_providers()
            if active:
                self.provider = active[0]

        declared_inputs = {node.name: node for node in self._native.get_inputs()}
        declared_outputs = {node.name for node in self._native.get_outputs()}

        missing_in = [n for n in self.input_names if n not in declared_inputs]
        missing_out = [n for n in self.output_names if n not in declared_outputs]
        if missing_in or missing_out:
            raise LoadError(
                f"Model {self.model_id} does not declare "
                f"inputs {missing_in} / outputs {missing_out} "
                f"(has inputs {sorted(declared_inputs)}, outputs {sorted(declared_outputs)})",
                model_id=self.model_id,
            )
        for name in self.input_names:
            node = declared_inputs[name]
            self.input_shapes[name] = _static_shape(getattr(node, "shape", None))
            self.input_types[name] = getattr(node, "type", None)

    def validate_feeds(self, feeds: Mapping[str, np.ndarray]) -> None:
        """
        Check feeds against declared names, ranks, static dims and dtypes.

        Raises:
            InferenceError: On the first mismatch found
        """
        supplied = set(feeds)
        expected = set(self.input_names)
        if supplied != expected:
            raise InferenceError(
                f"Feeds for {self.model_id} must be exactly {sorted(expected)}, "
                f"got {sorted(supplied)}",
                model_id=self.model_id,
            )
        for name in self.input_names:
            tensor = feeds[name]
            declared = self.input_shapes.get(name)
            if declared is not None:
                if tensor.ndim != len(declared) or any(
                    want is not None and want != got
                    for want, got in zip(declared, tensor.shape)
                ):
                    raise InferenceError(
                        f"Input '{name}' of {self.model_id} expects shape "
                        f"{declared}, got {tuple(tensor.shape)}",
                        model_id=self.model_id,
                    )
            dtype = _ORT_DTYPES.get(self.input_types.get(name) or "")
            if dtype is not None and tensor.dtype != dtype:
                raise InferenceError(
                    f"Input '{name}' of {self.model_id} expects {np.dtype(dtype)}, "
                    f"got {tensor.dtype}",
                    model_id=self.model_id,
                )

    def run(self, feeds: Mapping[str, np.ndarray]) -> dict[str, np.ndarray]:
        """
        Run the model once.

        Args:
            feeds: Input tensors keyed by declared input name

        Returns:
            Declared outputs keyed by name. Arrays are copies owned by the
            caller and stay valid after the session is destroyed.

        Raises:
            InferenceError: Handle destroyed, feeds invalid, or native failure
        """
        with self._lock:
            if self.state is not SessionState.ACTIVE:
                raise InferenceError(
                    f"Session for {self.model_id} is {self.state.value}",
                    model_id=self.model_id,
                )
            self.validate_feeds(feeds)
            inputs = {name: feeds[name] for name in self.input_names}
            try:
                raw = self._native.run(list(self.output_names), inputs)
            except Exception as exc:
                raise InferenceError(
                    f"Inference failed for {self.model_id}: {exc}", model_id=self.model_id
                ) from exc
            finally:
                inputs.clear()
            return {
                name: np.array(value, copy=True)
                for name, value in zip(self.output_names, raw)
            }

    def _discard(self) -> None:
        try:
            self.destroy()
        except ResourceError as exc:
            logger.warning("[Session] %s", exc)

    def destroy(self) -> None:
        """
        Release the native session. Safe to call any number of times.

        Waits for an in-flight ``run()`` to finish first. The handle is
        DESTROYED afterwards even if the release fails.

        Raises:
            ResourceError: If the native release raised
        """
        with self._lock:
            if self.state is SessionState.DESTROYED:
                return
            native, self._native = self._native, None
            self.state = SessionState.DESTROYED

        try:
            close = getattr(native, "close", None)
            if callable(close):
                close()
        except Exception as exc:
            raise ResourceError(
                f"Failed to release session for {self.model_id}: {exc}",
                model_id=self.model_id,
            ) from exc
        finally:
            del native
            gc.collect()
        logger.debug("[Session] Destroyed %s", self.model_id)

    def __repr__(self) -> str:
        return (
            f"SessionHandle(model_id={self.model_id!r}, provider={self.provider!r}, "
            f"state={self.state.value})"
        )
