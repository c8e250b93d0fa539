"""Tests for SessionHandle - open validation, feed checks and destroy."""

import numpy as np
import pytest

from npu_assistant.errors import InferenceError, LoadError, ResourceError
from npu_assistant.runtime.providers import CPU_PROVIDER, ProviderSelector, SessionOptions
from npu_assistant.runtime.session import SessionHandle, SessionState

TEXT_NAMES = ("input_ids", "attention_mask")


@pytest.fixture
def model_file(model_dir):
    path = model_dir / "phi.onnx"
    path.write_bytes(b"onnx")
    return path


@pytest.fixture
def open_handle(model_file, session_factory):
    def _open(input_names=TEXT_NAMES, output_names=("logits",), path=None):
        return SessionHandle.open(
            path or model_file,
            input_names,
            output_names,
            SessionOptions(providers=[CPU_PROVIDER]),
            model_id="phi",
            session_factory=session_factory,
        )
    return _open


def _feeds(n=3):
    ids = np.ones((1, n), dtype=np.int64)
    return {"input_ids": ids, "attention_mask": ids.copy()}


def test_open_activates_handle_and_reads_shapes(open_handle):
    handle = open_handle()

    assert handle.state is SessionState.ACTIVE
    assert handle.provider == CPU_PROVIDER
    assert handle.input_shapes["input_ids"] == (None, None)
    assert handle.input_types["input_ids"] == "tensor(int64)"


def test_open_missing_file_raises_load_error(open_handle, model_dir, session_factory):
    with pytest.raises(LoadError, match="not found"):
        open_handle(path=model_dir / "missing.onnx")
    assert session_factory.calls == 0


def test_open_wraps_runtime_failure(open_handle, session_factory):
    session_factory.fail_stems.add("phi")

    with pytest.raises(LoadError, match="Failed to open") as exc_info:
        open_handle()

    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_open_rejects_undeclared_output(open_handle):
    with pytest.raises(LoadError, match="does not declare"):
        open_handle(output_names=("hidden_states",))


def test_run_returns_copied_outputs(open_handle):
    handle = open_handle()

    outputs = handle.run(_feeds())

    assert set(outputs) == {"logits"}
    assert outputs["logits"].shape == (1, 3, 128)
    handle.destroy()
    assert outputs["logits"][0, -1].max() == 100.0


def test_run_rejects_missing_and_extra_feeds(open_handle):
    handle = open_handle()
    feeds = _feeds()
    del feeds["attention_mask"]

    with pytest.raises(InferenceError, match="must be exactly"):
        handle.run(feeds)

    feeds = _feeds()
    feeds["position_ids"] = feeds["input_ids"]
    with pytest.raises(InferenceError, match="must be exactly"):
        handle.run(feeds)


def test_run_rejects_wrong_rank_and_dtype(open_handle):
    handle = open_handle()

    with pytest.raises(InferenceError, match="expects shape"):
        handle.run({"input_ids": np.ones(3, dtype=np.int64), "attention_mask": np.ones(3, dtype=np.int64)})

    feeds = _feeds()
    feeds["input_ids"] = feeds["input_ids"].astype(np.int32)
    with pytest.raises(InferenceError, match="expects int64"):
        handle.run(feeds)


def test_run_rejects_static_dimension_mismatch(model_dir, session_factory):
    path = model_dir / "vision.onnx"
    path.write_bytes(b"onnx")
    handle = SessionHandle.open(
        path,
        ("pixel_values", "input_ids"),
        ("logits",),
        SessionOptions(providers=[CPU_PROVIDER]),
        model_id="vision",
        session_factory=session_factory,
    )

    with pytest.raises(InferenceError, match=r"\(1, 3, 384, 384\)"):
        handle.run({
            "pixel_values": np.zeros((1, 3, 224, 224), dtype=np.float32),
            "input_ids": np.ones((1, 2), dtype=np.int64),
        })
    assert session_factory.created[0].runs == 0


def test_native_failure_is_inference_error_and_session_stays_usable(open_handle, session_factory):
    session_factory.fail_runs = 1
    handle = open_handle()

    with pytest.raises(InferenceError, match="device lost"):
        handle.run(_feeds())

    assert handle.run(_feeds())["logits"].shape == (1, 3, 128)


def test_destroy_is_idempotent(open_handle, session_factory):
    handle = open_handle()

    handle.destroy()
    handle.destroy()

    assert handle.state is SessionState.DESTROYED
    assert session_factory.created[0].closed
    with pytest.raises(InferenceError, match="destroyed"):
        handle.run(_feeds())


def test_destroy_failure_raises_resource_error_but_completes(open_handle, session_factory):
    handle = open_handle()
    session_factory.created[0].fail_close = True

    with pytest.raises(ResourceError):
        handle.destroy()

    assert handle.state is SessionState.DESTROYED
    handle.destroy()


# ---------------------------------------------------------------------------
# Provider actually in use and metadata failures
# ---------------------------------------------------------------------------

def test_provider_reflects_what_the_runtime_kept(model_file, session_factory):
    session_factory.active_providers = [CPU_PROVIDER]
    selector = ProviderSelector(
        available_providers=lambda: ["DmlExecutionProvider", CPU_PROVIDER]
    )
    options = SessionOptions.create()
    selector.enable(options, "dml", model_id="phi")

    handle = SessionHandle.open(
        model_file,
        TEXT_NAMES,
        ("logits",),
        options,
        model_id="phi",
        selector=selector,
        session_factory=session_factory,
    )

    assert handle.provider == CPU_PROVIDER
    assert not handle.accelerated
    assert [e.model_id for e in selector.fallbacks()] == ["phi"]


def test_accelerated_provider_kept_by_runtime(model_file, session_factory):
    selector = ProviderSelector(
        available_providers=lambda: ["DmlExecutionProvider", CPU_PROVIDER]
    )
    options = SessionOptions.create()
    selector.enable(options, "dml", model_id="phi")

    handle = SessionHandle.open(
        model_file,
        TEXT_NAMES,
        ("logits",),
        options,
        model_id="phi",
        selector=selector,
        session_factory=session_factory,
    )

    assert handle.provider == "DmlExecutionProvider"
    assert handle.accelerated
    assert selector.fallbacks() == []


def test_metadata_failure_closes_native_session(open_handle, session_factory):
    session_factory.fail_metadata_stems.add("phi")

    with pytest.raises(LoadError, match="Failed to read model metadata") as exc_info:
        open_handle()

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert session_factory.sessions_for("phi")[0].closed


def test_undeclared_names_close_native_session(open_handle, session_factory):
    with pytest.raises(LoadError, match="does not declare"):
        open_handle(input_names=("pixel_values",))

    assert session_factory.sessions_for("phi")[0].closed
