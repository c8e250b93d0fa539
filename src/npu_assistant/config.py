"""
Configuration management for the NPU assistant.

Loads the static configuration document (YAML) and applies documented
defaults for every missing field. Environment variables (typically from a
.env file, loaded with python-dotenv) can point at the document, relocate
relative model paths, or force an execution provider.

Usage:
    from npu_assistant.config import load_config

    config = load_config("configs/config.yaml")
    phi = config.models["phi"]
    policy = config.memory

Environment variables:
    NPU_ASSISTANT_CONFIG      path to the YAML document
    NPU_ASSISTANT_MODELS_DIR  base directory for relative model paths
    NPU_ASSISTANT_PROVIDER    execution provider forced for every model
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

# Look for .env in project root (parent of src/)
_env_path = Path(__file__).parent.parent.parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

DEFAULT_CONFIG_PATH = "configs/config.yaml"
DEFAULT_PROVIDER = "dml"
STT_MODEL_ID = "whisper"

TEXT_INPUT_NAMES = ("input_ids", "attention_mask")
VISION_INPUT_NAMES = ("pixel_values", "input_ids")
STT_INPUT_NAMES = ("audio_input",)
DEFAULT_OUTPUT_NAMES = ("logits",)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Union[int, float, str, None], default: float) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings such as ``"90s"``, ``"5m"``,
    ``"1h"`` or ``"500ms"``. ``None`` yields ``default``.

    Raises:
        ConfigError: If the value cannot be parsed or is negative.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ConfigError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds < 0:
        raise ConfigError(f"Duration must be >= 0, got {value!r}")
    return seconds


@dataclass(frozen=True)
class AudioConfig:
    """Microphone capture settings."""
    sample_rate: int = 16000
    vad_threshold: float = 0.01
    silence_ms: int = 1000
    max_duration_ms: int = 30000


@dataclass(frozen=True)
class STTConfig:
    """Speech-recognition settings."""
    model_path: str = "models/whisper-medium.onnx"
    language: str = "pt"
    model_size: str = "medium"
    provider: str = DEFAULT_PROVIDER


@dataclass(frozen=True)
class TTSConfig:
    """Text-to-speech (Piper) settings."""
    piper_path: str = "piper"
    voice_path: str = ""
    voice_name: str = "pt_BR-faber-medium"
    speak_rate: float = 1.0


@dataclass(frozen=True)
class ModelConfig:
    """
    Static configuration of one inference model.

    Attributes:
        name: Human-readable model name (e.g. ``"phi-3.5-mini"``)
        path: Filesystem path to the ONNX weights
        tokenizer_path: Optional path to a JSON vocabulary
        max_tokens: Upper bound on generated tokens per call
        temperature: Sampling temperature (0 = greedy)
        system_prompt: Optional system message prepended to prompts
        input_names: Tensor names the session is opened with
        output_names: Tensor names read back from each run
        provider: Requested acceleration provider kind (``"dml"``, ``"cpu"``, ...)
    """
    name: str
    path: str
    tokenizer_path: Optional[str] = None
    max_tokens: int = 512
    temperature: float = 0.7
    system_prompt: Optional[str] = None
    input_names: tuple[str, ...] = TEXT_INPUT_NAMES
    output_names: tuple[str, ...] = DEFAULT_OUTPUT_NAMES
    provider: str = DEFAULT_PROVIDER

    def __post_init__(self):
        """Validate that required fields are present and in range."""
        if not self.name:
            raise ConfigError("Model name must not be empty")
        if not self.path:
            raise ConfigError(f"Model path not set for {self.name}", model_id=self.name)
        if self.max_tokens <= 0:
            raise ConfigError(
                f"max_tokens must be > 0 for {self.name}, got {self.max_tokens}",
                model_id=self.name,
            )
        if self.temperature < 0:
            raise ConfigError(
                f"temperature must be >= 0 for {self.name}, got {self.temperature}",
                model_id=self.name,
            )
        if not self.input_names or not self.output_names:
            raise ConfigError(
                f"Model {self.name} must declare input and output names",
                model_id=self.name,
            )


@dataclass(frozen=True)
class MemoryPolicy:
    """
    Idle-unload policy shared by every model.

    Attributes:
        unload_after: Seconds a model may stay idle before eviction (0 = never)
        persistent: Model ids that are never evicted by the idle pass
        load_all: Load every catalog model at startup
        check_interval: Seconds between background eviction passes
    """
    unload_after: float = 300.0
    persistent: frozenset[str] = frozenset({STT_MODEL_ID, "phi"})
    load_all: bool = False
    check_interval: float = 30.0

    def __post_init__(self):
        object.__setattr__(self, "persistent", frozenset(self.persistent))
        if self.unload_after < 0:
            raise ConfigError(f"unload_after must be >= 0, got {self.unload_after}")
        if self.check_interval <= 0:
            raise ConfigError(f"check_interval must be > 0, got {self.check_interval}")


def default_models() -> dict[str, ModelConfig]:
    """Return the built-in model table used when the document omits a model."""
    return {
        "phi": ModelConfig(
            name="phi-3.5-mini",
            path="models/phi-3.5-mini.onnx",
            max_tokens=512,
            temperature=0.7,
        ),
        "llama": ModelConfig(
            name="llama-3.2-3b",
            path="models/llama-3.2-3b.onnx",
            max_tokens=1024,
            temperature=0.7,
        ),
        "qwen": ModelConfig(
            name="qwen-2.5-3b",
            path="models/qwen-2.5-3b.onnx",
            max_tokens=512,
            temperature=0.3,
        ),
        "vision": ModelConfig(
            name="minicpm-v",
            path="models/minicpm-v.onnx",
            max_tokens=256,
            temperature=0.7,
            input_names=VISION_INPUT_NAMES,
        ),
        "coder": ModelConfig(
            name="qwen-coder-3b",
            path="models/qwen-coder-3b.onnx",
            max_tokens=1024,
            temperature=0.2,
        ),
    }


@dataclass
class AppConfig:
    """Complete application configuration after defaults are applied."""
    audio: AudioConfig = field(default_factory=AudioConfig)
    stt: STTConfig = field(default_factory=STTConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)
    models: dict[str, ModelConfig] = field(default_factory=default_models)
    memory: MemoryPolicy = field(default_factory=MemoryPolicy)

    def stt_model(self) -> ModelConfig:
        """Speech-recognition model as a catalog entry."""
        return ModelConfig(
            name=f"whisper-{self.stt.model_size}",
            path=self.stt.model_path,
            max_tokens=448,
            temperature=0.0,
            input_names=STT_INPUT_NAMES,
            provider=self.stt.provider,
        )


def _section(raw: Mapping[str, Any], key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Section '{key}' must be a mapping, got {type(value).__name__}")
    return dict(value)


def _pick(cls, data: Mapping[str, Any]) -> dict:
    """Keep only keys that are fields of ``cls``; reject unknown ones."""
    known = set(cls.__dataclass_fields__)
    unknown = set(data) - known
    if unknown:
        raise ConfigError(
            f"Unknown {cls.__name__} field(s): {', '.join(sorted(unknown))}"
        )
    return dict(data)


def _resolve_path(path: Optional[str], models_dir: Optional[str]) -> Optional[str]:
    if not path or not models_dir or os.path.isabs(path):
        return path
    return str(Path(models_dir) / path)


def _build_model(
    model_id: str,
    data: Mapping[str, Any],
    base: Optional[ModelConfig],
    models_dir: Optional[str],
    provider_override: Optional[str],
) -> ModelConfig:
    if not isinstance(data, Mapping):
        raise ConfigError(f"Model '{model_id}' must be a mapping", model_id=model_id)
    fields = _pick(ModelConfig, data)
    for key in ("input_names", "output_names"):
        if key in fields:
            fields[key] = tuple(fields[key])
    try:
        if base is not None:
            model = replace(base, **fields)
        else:
            fields.setdefault("name", model_id)
            model = ModelConfig(**fields)
    except TypeError as exc:
        raise ConfigError(f"Invalid model '{model_id}': {exc}", model_id=model_id) from exc

    updates: dict[str, Any] = {
        "path": _resolve_path(model.path, models_dir),
        "tokenizer_path": _resolve_path(model.tokenizer_path, models_dir),
    }
    if provider_override:
        updates["provider"] = provider_override
    return replace(model, **updates)


def _build_memory(raw: Mapping[str, Any]) -> MemoryPolicy:
    memory = _section(raw, "memory")
    models = _section(raw, "models")
    persistent = memory.get("persistent")
    if persistent is not None and not isinstance(persistent, (list, tuple, set, frozenset)):
        raise ConfigError("memory.persistent must be a list of model ids")
    return MemoryPolicy(
        unload_after=parse_duration(memory.get("unload_after"), 300.0),
        persistent=(
            frozenset(persistent) if persistent is not None else MemoryPolicy().persistent
        ),
        load_all=bool(memory.get("load_all", models.get("load_all", False))),
        check_interval=parse_duration(memory.get("check_interval"), 30.0),
    )


def config_from_dict(raw: Optional[Mapping[str, Any]]) -> AppConfig:
    """
    Build an AppConfig from an already-parsed document.

    Every missing section or field takes its documented default.

    Raises:
        ConfigError: If a section has the wrong type or a value is invalid
    """
    raw = raw or {}
    if not isinstance(raw, Mapping):
        raise ConfigError("Configuration document must be a mapping")

    models_dir = os.getenv("NPU_ASSISTANT_MODELS_DIR") or None
    provider_override = os.getenv("NPU_ASSISTANT_PROVIDER") or None

    try:
        audio = AudioConfig(**_pick(AudioConfig, _section(raw, "audio")))
        stt = STTConfig(**_pick(STTConfig, _section(raw, "stt")))
        tts = TTSConfig(**_pick(TTSConfig, _section(raw, "tts")))
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc

    stt = replace(stt, model_path=_resolve_path(stt.model_path, models_dir))
    if provider_override:
        stt = replace(stt, provider=provider_override)

    defaults = default_models()
    models: dict[str, ModelConfig] = {}
    declared = {k: v for k, v in _section(raw, "models").items() if k != "load_all"}
    for model_id in list(defaults) + [k for k in declared if k not in defaults]:
        models[model_id] = _build_model(
            model_id,
            declared.get(model_id) or {},
            defaults.get(model_id),
            models_dir,
            provider_override,
        )

    return AppConfig(
        audio=audio,
        stt=stt,
        tts=tts,
        models=models,
        memory=_build_memory(raw),
    )


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Document path. Defaults to ``NPU_ASSISTANT_CONFIG`` or
            ``configs/config.yaml``. A missing file yields pure defaults.

    Returns:
        AppConfig with defaults applied

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values
    """
    path = Path(path or os.getenv("NPU_ASSISTANT_CONFIG") or DEFAULT_CONFIG_PATH)
    if not path.exists():
        return config_from_dict({})
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read configuration {path}: {exc}") from exc
    return config_from_dict(raw)


def save_config(config: AppConfig, path: Union[str, Path]) -> None:
    """Write ``config`` back to a YAML document."""
    document = {
        "audio": vars(config.audio).copy(),
        "stt": vars(config.stt).copy(),
        "tts": vars(config.tts).copy(),
        "models": {
            model_id: {
                **{k: v for k, v in vars(model).items() if k not in ("input_names", "output_names")},
                "input_names": list(model.input_names),
                "output_names": list(model.output_names),
            }
            for model_id, model in config.models.items()
        },
        "memory": {
            "unload_after": config.memory.unload_after,
            "persistent": sorted(config.memory.persistent),
            "load_all": config.memory.load_all,
            "check_interval": config.memory.check_interval,
        },
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(document, handle, sort_keys=False, allow_unicode=True)
