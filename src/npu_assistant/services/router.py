"""Keyword intent detection and the model each intent is served by."""

from enum import Enum


class Intent(str, Enum):
    SIMPLE = "simple"
    ACTION = "action"
    CONTEXT = "context"
    VISION = "vision"
    CODE = "code"


# Checked in this order; the first intent with a matching keyword wins.
INTENT_KEYWORDS: tuple[tuple[Intent, tuple[str, ...]], ...] = (
    (Intent.VISION, ("tela", "vendo", "olha", "mostra", "screenshot", "imagem", "o que tem")),
    (
        Intent.CODE,
        (
            "código", "codigo", "função", "funcao", "bug", "erro",
            "programa", "script", "python", "go ", "javascript",
        ),
    ),
    (
        Intent.ACTION,
        (
            "abre", "abra", "fecha", "feche", "envia", "manda", "lê ", "ler ",
            "email", "chrome", "navegador", "volume", "brilho",
        ),
    ),
    (Intent.CONTEXT, ("explica", "conte", "história", "como funciona", "por que", "porque")),
)

MODEL_FOR_INTENT: dict[Intent, str] = {
    Intent.SIMPLE: "phi",
    Intent.ACTION: "qwen",
    Intent.CONTEXT: "llama",
    Intent.VISION: "vision",
    Intent.CODE: "coder",
}


def detect_intent(text: str) -> Intent:
    """Classify a user utterance by keyword; anything unmatched is SIMPLE."""
    lower = text.lower()
    for intent, keywords in INTENT_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return intent
    return Intent.SIMPLE
