"""Tests for the npu-assistant command line."""

import json

import pytest

from npu_assistant.cli import build_parser, main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("NPU_ASSISTANT_CONFIG", "NPU_ASSISTANT_MODELS_DIR", "NPU_ASSISTANT_PROVIDER"):
        monkeypatch.delenv(name, raising=False)


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_status_prints_catalog_state(tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("memory:\n  unload_after: 1m\n", encoding="utf-8")

    assert main(["--config", str(config), "status"]) == 0

    stats = json.loads(capsys.readouterr().out)
    assert stats["total_loaded"] == 0
    assert stats["models"]["whisper"]["persistent"] is True
    assert stats["models"]["coder"]["state"] == "unloaded"


def test_status_reports_config_errors(tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("models:\n  phi:\n    max_tokens: -3\n", encoding="utf-8")

    assert main(["--config", str(config), "status"]) == 1
    assert "max_tokens" in capsys.readouterr().err


def test_voices_lists_onnx_files(tmp_path, capsys):
    (tmp_path / "b.onnx").write_bytes(b"")
    (tmp_path / "a.onnx").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("x")

    assert main(["voices", str(tmp_path)]) == 0
    assert capsys.readouterr().out.split() == ["a.onnx", "b.onnx"]


def test_ask_with_missing_model_file_fails_cleanly(tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text(
        f"models:\n  phi:\n    path: {tmp_path / 'absent.onnx'}\n    provider: cpu\n",
        encoding="utf-8",
    )

    assert main(["--config", str(config), "ask", "--model", "phi", "oi"]) == 1
    assert "not found" in capsys.readouterr().err
