"""
Assistant Service - async facade that routes an utterance to a model.

``respond()`` detects the intent, runs the matching pipeline in a worker
thread, retries transient inference failures with exponential backoff,
and turns every failure into an unsuccessful ``AssistantResponse``.

Usage:
    async with AssistantService(manager, speaker=speaker) as assistant:
        response = await assistant.respond("o que tem na tela?")
        print(response.text)
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..collaborators.capture import ScreenCapture
from ..collaborators.speech import PiperSpeaker, SpeechTask
from ..errors import AssistantError, GenerationCancelled, InferenceError
from ..pipelines.text import TextPipeline
from ..pipelines.vision import VisionPipeline
from ..runtime.manager import LifecycleManager
from .router import MODEL_FOR_INTENT, Intent, detect_intent

logger = logging.getLogger(__name__)

VISION_PROMPT = "Descreva o que aparece na tela e responda: {question}"


@dataclass
class AssistantResponse:
    text: str
    intent: Intent
    model_id: str
    success: bool
    error: Optional[str] = None
    latency_ms: Optional[float] = None
    speech: Optional[SpeechTask] = None


class AssistantService:
    """
    Routes utterances to the text, action, code and vision pipelines.

    Generation runs in worker threads, so the event loop stays free while
    a model loads or decodes. A timed-out or cancelled call sets the
    generation's cancel event; the worker stops at the next decode step
    and releases its lease.
    """

    def __init__(
        self,
        manager: LifecycleManager,
        text_pipeline: Optional[TextPipeline] = None,
        vision_pipeline: Optional[VisionPipeline] = None,
        screen_capture: Optional[ScreenCapture] = None,
        speaker: Optional[PiperSpeaker] = None,
        timeout: Optional[float] = 120.0,
        max_retries: int = 2,
        initial_wait: float = 0.5,
        max_wait: float = 4.0,
        model_for_intent: Optional[Mapping[Intent, str]] = None,
    ):
        """
        Args:
            manager: Lifecycle manager owning the model sessions
            text_pipeline: Pipeline for text intents (built from ``manager``)
            vision_pipeline: Pipeline for the vision intent
            screen_capture: Source of screenshots for the vision intent
            speaker: Optional TTS collaborator for ``speak=True``
            timeout: Seconds per generation attempt (None = no limit)
            max_retries: Attempts for transient inference failures
            initial_wait: Initial backoff in seconds
            max_wait: Maximum backoff in seconds
            model_for_intent: Overrides the default intent -> model map
        """
        self.manager = manager
        self.text = text_pipeline or TextPipeline(manager)
        self.vision = vision_pipeline or VisionPipeline(manager)
        self.screen_capture = screen_capture
        self.speaker = speaker
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.initial_wait = initial_wait
        self.max_wait = max_wait
        self.model_for_intent = dict(MODEL_FOR_INTENT)
        if model_for_intent:
            self.model_for_intent.update(model_for_intent)

    async def respond(self, text: str, speak: bool = False) -> AssistantResponse:
        """
        Answer ``text`` with the model its intent maps to.

        Never raises for model, capture or timeout failures; those yield
        ``success=False`` with the error message.
        """
        intent = detect_intent(text)
        model_id = self.model_for_intent[intent]
        logger.info("[Assistant] Intent %s -> %s", intent.value, model_id)

        t0 = time.time()
        try:
            reply = await self._call_with_retry(self._dispatch, intent, model_id, text)
        except (AssistantError, asyncio.TimeoutError) as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("[Assistant] %s failed on %s: %s", intent.value, model_id, message)
            return AssistantResponse(
                text="",
                intent=intent,
                model_id=model_id,
                success=False,
                error=message,
                latency_ms=(time.time() - t0) * 1000,
            )

        response = AssistantResponse(
            text=reply,
            intent=intent,
            model_id=model_id,
            success=True,
            latency_ms=(time.time() - t0) * 1000,
        )
        if speak and self.speaker is not None and reply:
            try:
                response.speech = self.speaker.speak_async(reply)
            except (AssistantError, RuntimeError) as exc:
                # A failed hand-off leaves the reply successful.
                logger.warning("[Assistant] Could not queue speech: %s", exc)
        return response

    async def generate(self, model_id: str, prompt: str) -> str:
        """Generate with a specific model. Errors propagate."""
        return await self._run_cancellable(self.text.generate, model_id, prompt)

    async def analyze(self, model_id: str, image_bytes: bytes, prompt: str) -> str:
        """Describe an image with a specific vision model. Errors propagate."""
        return await self._run_cancellable(self.vision.analyze, model_id, image_bytes, prompt)

    async def _dispatch(self, intent: Intent, model_id: str, text: str) -> str:
        if intent is Intent.VISION:
            if self.screen_capture is None:
                raise AssistantError("No screen capture configured", model_id=model_id)
            image = await asyncio.to_thread(self.screen_capture.capture_screen)
            return await self.analyze(model_id, image, VISION_PROMPT.format(question=text))
        if intent is Intent.ACTION:
            return await self._run_cancellable(self.text.generate_action, model_id, text)
        return await self.generate(model_id, text)

    async def _run_cancellable(self, func: Callable[..., str], *args: Any) -> str:
        cancel_event = threading.Event()
        work = asyncio.to_thread(func, *args, cancel_event=cancel_event)
        try:
            if self.timeout is None:
                return await work
            return await asyncio.wait_for(work, self.timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            cancel_event.set()
            raise

    async def _call_with_retry(self, func: Callable[..., Any], *args: Any) -> str:
        retry_decorator = retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=self.initial_wait,
                min=self.initial_wait,
                max=self.max_wait,
            ),
            retry=retry_if_exception(self._should_retry_exception),
            reraise=True,
        )

        @retry_decorator
        async def _make_call():
            return await func(*args)

        return await _make_call()

    @staticmethod
    def _should_retry_exception(exception: BaseException) -> bool:
        """Only native inference failures are transient; loads and cancels are not."""
        return isinstance(exception, InferenceError) and not isinstance(
            exception, GenerationCancelled
        )

    async def close(self) -> None:
        if self.speaker is not None:
            await asyncio.to_thread(self.speaker.close)
        await asyncio.to_thread(self.manager.shutdown)

    async def __aenter__(self) -> "AssistantService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
