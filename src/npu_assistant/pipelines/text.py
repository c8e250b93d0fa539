"""
Text generation over a leased model session.

Usage:
    pipeline = TextPipeline(manager)
    reply = pipeline.generate("phi", "Qual a capital do Brasil?")
"""

import logging
import threading
from collections.abc import Callable
from typing import Optional

import numpy as np

from ..config import ModelConfig
from ..errors import InferenceError
from ..runtime.manager import Lease, LifecycleManager
from .decoding import autoregressive_decode
from .sampling import SamplingParams
from .tokenizer import Tokenizer, load_tokenizer

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "Você é um assistente IA útil que responde em português brasileiro de forma concisa."
)

CHAT_TEMPLATE = "<|system|>\n{system}\n<|end|>\n<|user|>\n{user}\n<|end|>\n<|assistant|>\n"

ACTION_PROMPT = """Você é um assistente que executa ações no computador.
Dado o comando do usuário, retorne APENAS o JSON da ação, sem explicações.

Formato:
{{"action": "tipo_acao", "params": {{"param1": "valor1"}}}}

Ações disponíveis:
- open_app: abre aplicativo {{"app": "nome"}}
- open_url: abre URL {{"url": "endereco"}}
- type_text: digita texto {{"text": "texto"}}
- read_email: lê emails {{}}
- send_email: envia email {{"to": "email", "subject": "assunto", "body": "corpo"}}
- volume: ajusta volume {{"level": 50}}
- screenshot: captura tela {{}}

Comando: {command}

JSON:"""

TokenizerLoader = Callable[[ModelConfig], Tokenizer]


def _default_tokenizer_loader(config: ModelConfig) -> Tokenizer:
    return load_tokenizer(config.tokenizer_path)


class TokenizerCache:
    """One tokenizer per model id, loaded on first use."""

    def __init__(self, loader: Optional[TokenizerLoader] = None):
        self._loader = loader or _default_tokenizer_loader
        self._cache: dict[str, Tokenizer] = {}
        self._lock = threading.Lock()

    def get(self, model_id: str, config: ModelConfig) -> Tokenizer:
        with self._lock:
            tokenizer = self._cache.get(model_id)
            if tokenizer is None:
                tokenizer = self._loader(config)
                self._cache[model_id] = tokenizer
            return tokenizer


class TextPipeline:
    """Prompt -> tokens -> decode loop -> text, for text-only models."""

    def __init__(
        self,
        manager: LifecycleManager,
        tokenizers: Optional[TokenizerCache] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.manager = manager
        self.tokenizers = tokenizers or TokenizerCache()
        self._rng = rng

    def build_prompt(self, config: ModelConfig, prompt: str) -> str:
        system = config.system_prompt or DEFAULT_SYSTEM_PROMPT
        return CHAT_TEMPLATE.format(system=system, user=prompt)

    def generate(
        self,
        model_id: str,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Generate a reply from ``model_id``.

        Args:
            model_id: Catalog id of a text model
            prompt: User message, wrapped in the chat template
            cancel_event: Checked between decode steps

        Returns:
            The decoded reply, stripped

        Raises:
            ConfigError: Unknown model or bad tokenizer
            LoadError: The model could not be loaded
            InferenceError: A decode step failed
            GenerationCancelled: ``cancel_event`` was set
        """
        return self._complete(model_id, prompt, cancel_event, chat=True)

    def generate_action(
        self,
        model_id: str,
        command: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Ask ``model_id`` to turn a spoken command into action JSON."""
        return self._complete(
            model_id, ACTION_PROMPT.format(command=command), cancel_event, chat=False
        )

    def _complete(
        self,
        model_id: str,
        prompt: str,
        cancel_event: Optional[threading.Event],
        chat: bool,
    ) -> str:
        config = self.manager.catalog.get_entry(model_id).config
        with self.manager.acquire(model_id) as lease:
            tokenizer = self.tokenizers.get(model_id, config)
            text = self.build_prompt(config, prompt) if chat else prompt
            input_ids, _ = tokenizer.encode(text)
            generated = autoregressive_decode(
                lambda ids: self._step(lease, ids),
                input_ids,
                max_tokens=config.max_tokens,
                eos_token_id=tokenizer.eos_token_id,
                params=SamplingParams.for_temperature(config.temperature),
                cancel_event=cancel_event,
                rng=self._rng,
            )
        return tokenizer.decode(generated).strip()

    def _step(self, lease: Lease, ids: list[int]) -> np.ndarray:
        available = {
            "input_ids": np.asarray([ids], dtype=np.int64),
            "attention_mask": np.ones((1, len(ids)), dtype=np.int64),
        }
        feeds = {}
        try:
            for name in lease.config.input_names:
                if name not in available:
                    raise InferenceError(
                        f"Text pipeline cannot supply input '{name}'", model_id=lease.model_id
                    )
                feeds[name] = available[name]
            outputs = lease.run(feeds)
        finally:
            feeds.clear()
            available.clear()
        return outputs[lease.config.output_names[0]]
