"""
Pytest configuration and shared fixtures.

This file is automatically discovered by pytest and provides fixtures
available to all test modules. Nothing here needs real model weights:
native onnxruntime sessions are replaced by ``FakeSession`` objects built
by a ``FakeSessionFactory``.
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import numpy as np
import pytest

from npu_assistant.config import MemoryPolicy, ModelConfig, VISION_INPUT_NAMES
from npu_assistant.runtime.catalog import ModelCatalog
from npu_assistant.runtime.manager import LifecycleManager
from npu_assistant.runtime.providers import CPU_PROVIDER, ProviderSelector

EOS = 2
VOCAB_SIZE = 128
REPLY_BASE = 100
REPLY_CHARS = {100: "o", 101: "k", 102: "!"}


@dataclass
class FakeNodeArg:
    """Stand-in for onnxruntime.NodeArg."""
    name: str
    shape: list = field(default_factory=lambda: ["batch", "sequence"])
    type: str = "tensor(int64)"


TEXT_INPUTS = [FakeNodeArg("input_ids"), FakeNodeArg("attention_mask")]
VISION_INPUTS = [
    FakeNodeArg("pixel_values", [1, 3, 384, 384], "tensor(float)"),
    FakeNodeArg("input_ids"),
]
OUTPUTS = [FakeNodeArg("logits", ["batch", "sequence", VOCAB_SIZE], "tensor(float)")]


def scripted_responder(reply_ids):
    """Emit ``reply_ids`` one per step, then EOS.

    Prompt tokens are all below REPLY_BASE, so the number of reply tokens
    already in the sequence tells us which step we are on.
    """
    def respond(ids):
        step = sum(1 for t in ids if t >= REPLY_BASE)
        return reply_ids[step] if step < len(reply_ids) else EOS
    return respond


class FakeSession:
    def __init__(self, path, providers, inputs, outputs, responder, fail_runs=0):
        self.path = path
        self.providers = providers
        self._inputs = inputs
        self._outputs = outputs
        self.responder = responder
        self.fail_runs = fail_runs
        self.runs = 0
        self.closed = False
        self.fail_close = False
        self.fail_metadata = False
        self.active_providers = None
        self.logits_fill = None
        self.close_gate = None
        self.close_entered = threading.Event()
        self.feeds_seen = []

    def get_inputs(self):
        if self.fail_metadata:
            raise RuntimeError("graph metadata unavailable")
        return self._inputs

    def get_providers(self):
        return list(self.active_providers or self.providers)

    def get_outputs(self):
        return self._outputs

    def run(self, output_names, feeds):
        self.runs += 1
        self.feeds_seen.append({k: v.shape for k, v in feeds.items()})
        if self.runs <= self.fail_runs:
            raise RuntimeError("device lost")
        ids = [int(t) for t in feeds["input_ids"][0]]
        logits = np.zeros((1, len(ids), VOCAB_SIZE), dtype=np.float32)
        if self.logits_fill is not None:
            logits[:] = self.logits_fill
        else:
            logits[0, -1, self.responder(ids)] = 100.0
        return [logits]

    def close(self):
        if self.close_gate is not None:
            self.close_entered.set()
            self.close_gate.wait(timeout=5)
        if self.fail_close:
            raise RuntimeError("release failed")
        self.closed = True


class FakeSessionFactory:
    """Callable with the ``onnxruntime.InferenceSession`` signature.

    Attributes:
        inputs: Declared inputs per model file stem (default TEXT_INPUTS)
        fail_stems: File stems whose creation raises
        fail_once_stems: File stems whose next creation raises
        fail_providers: Providers whose creation raises (CPU fallback tests)
        gate: If set, creation blocks until the event is set
        gated_stems: Limit the gate to these stems (empty = all)
        fail_metadata_stems: File stems whose sessions fail to report inputs
        active_providers: Providers the runtime reports as actually in use
        logits_fill: If set, every run returns logits filled with this value
        close_gate: If set, closing a session blocks until the event is set
    """

    def __init__(self):
        self.inputs: dict[str, list] = {"vision": VISION_INPUTS}
        self.fail_stems: set[str] = set()
        self.fail_once_stems: set[str] = set()
        self.fail_providers: set[str] = set()
        self.gate: Optional[threading.Event] = None
        self.gated_stems: set[str] = set()
        self.entered = threading.Event()
        self.responder: Callable[[list], int] = scripted_responder([100, 101])
        self.fail_runs = 0
        self.fail_metadata_stems: set[str] = set()
        self.active_providers: Optional[list[str]] = None
        self.logits_fill: Optional[float] = None
        self.close_gate: Optional[threading.Event] = None
        self.created: list[FakeSession] = []
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, path, sess_options=None, providers=None):
        with self._lock:
            self.calls += 1
        stem = Path(path).stem
        if self.gate is not None and (not self.gated_stems or stem in self.gated_stems):
            self.entered.set()
            self.gate.wait(timeout=5)
        with self._lock:
            fail_once = stem in self.fail_once_stems
            self.fail_once_stems.discard(stem)
        if stem in self.fail_stems or fail_once:
            raise RuntimeError(f"invalid model {stem}")
        if providers and providers[0] in self.fail_providers:
            raise RuntimeError(f"{providers[0]} rejected the graph")
        session = FakeSession(
            path,
            providers,
            self.inputs.get(stem, TEXT_INPUTS),
            OUTPUTS,
            self.responder,
            self.fail_runs,
        )
        session.fail_metadata = stem in self.fail_metadata_stems
        session.active_providers = self.active_providers
        session.logits_fill = self.logits_fill
        session.close_gate = self.close_gate
        with self._lock:
            self.created.append(session)
        return session

    def sessions_for(self, stem):
        return [s for s in self.created if Path(s.path).stem == stem]


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTokenizer:
    """Every prompt character becomes token 10; reply ids decode via REPLY_CHARS."""

    eos_token_id = EOS

    def __init__(self):
        self.encoded: list[str] = []

    def encode(self, text):
        self.encoded.append(text)
        ids = [1] + [10] * len(text)
        return ids, [1] * len(ids)

    def decode(self, ids):
        return "".join(REPLY_CHARS.get(int(i), "?") for i in ids)


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fake_tokenizer():
    return FakeTokenizer()


@pytest.fixture
def model_dir(tmp_path):
    """Directory of placeholder model files; the fake factory never reads them."""
    directory = tmp_path / "models"
    directory.mkdir()
    return directory


@pytest.fixture
def make_model_config(model_dir):
    """
    Fixture factory for ModelConfig objects backed by real files.

    Usage:
        config = make_model_config("vision", vision=True, max_tokens=8)
    """
    def _make(model_id: str, vision: bool = False, create_file: bool = True, **overrides: Any):
        path = model_dir / f"{model_id}.onnx"
        if create_file:
            path.write_bytes(b"onnx")
        fields = {
            "name": model_id,
            "path": str(path),
            "max_tokens": 8,
            "temperature": 0.0,
            "provider": "cpu",
        }
        if vision:
            fields["input_names"] = VISION_INPUT_NAMES
        fields.update(overrides)
        return ModelConfig(**fields)
    return _make


@pytest.fixture
def make_manager(make_model_config, session_factory, clock):
    """
    Fixture factory for a LifecycleManager over fake sessions.

    Usage:
        manager = make_manager(["stt", "vision"], persistent={"stt"}, unload_after=300)
    """
    managers = []

    def _make(
        model_ids=("phi", "vision"),
        persistent=(),
        unload_after: float = 300.0,
        available=(CPU_PROVIDER,),
        configs: Optional[dict] = None,
        **policy: Any,
    ) -> LifecycleManager:
        models = dict(configs or {})
        for model_id in model_ids:
            if model_id not in models:
                models[model_id] = make_model_config(model_id, vision=model_id == "vision")
        catalog = ModelCatalog(models, persistent)
        manager = LifecycleManager(
            catalog,
            MemoryPolicy(unload_after=unload_after, persistent=frozenset(persistent), **policy),
            selector=ProviderSelector(available_providers=lambda: list(available)),
            session_factory=session_factory,
            clock=clock,
        )
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.shutdown(drain_timeout=0.1)
