"""
Text-to-speech through the Piper command-line synthesizer.

``PiperSpeaker.speak()`` pipes text into ``piper``, which writes a WAV
file, and then plays it synchronously with the platform's player.
``speak_async()`` does the same on a single worker thread and never
raises: the outcome is recorded on the returned ``SpeechTask``.
"""

import logging
import subprocess
import sys
import tempfile
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from ..config import TTSConfig
from ..errors import SpeechError

logger = logging.getLogger(__name__)

VOICE_EXTENSION = ".onnx"

Runner = Callable[..., Any]


def list_available_voices(directory: Union[str, Path]) -> list[str]:
    """
    Voice model filenames (``*.onnx``) in ``directory``, sorted.

    Raises:
        SpeechError: If the directory cannot be read
    """
    directory = Path(directory)
    try:
        entries = list(directory.iterdir())
    except OSError as exc:
        raise SpeechError(f"Cannot list voices in {directory}: {exc}") from exc
    return sorted(p.name for p in entries if p.is_file() and p.suffix == VOICE_EXTENSION)


def playback_command(wav_path: Path, platform: Optional[str] = None) -> list[str]:
    """Command that plays ``wav_path`` to completion on ``platform``."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return [
            "powershell",
            "-c",
            f"(New-Object Media.SoundPlayer '{wav_path}').PlaySync()",
        ]
    if platform == "darwin":
        return ["afplay", str(wav_path)]
    return ["aplay", "-q", str(wav_path)]


@dataclass(frozen=True)
class SpeechResult:
    text: str
    success: bool
    error: Optional[BaseException] = None
    duration: float = 0.0


class SpeechTask:
    """Handle on a fire-and-forget utterance."""

    def __init__(self, text: str, future: Future):
        self.text = text
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> SpeechResult:
        """Wait for the utterance; failures are reported, not raised."""
        return self._future.result(timeout=timeout)

    def add_done_callback(self, callback: Callable[[SpeechResult], Any]) -> None:
        self._future.add_done_callback(lambda future: callback(future.result()))


class PiperSpeaker:
    """Speaks text with Piper. Use as a context manager or call ``close()``."""

    def __init__(
        self,
        config: Optional[TTSConfig] = None,
        runner: Runner = subprocess.run,
        platform: Optional[str] = None,
        timeout: float = 120.0,
    ):
        """
        Args:
            config: TTS settings (Piper binary, voice model, rate)
            runner: ``subprocess.run``-compatible callable
            platform: Overrides ``sys.platform`` when picking the player
            timeout: Seconds allowed for synthesis and for playback

        Raises:
            SpeechError: If a configured voice model does not exist
        """
        self.config = config or TTSConfig()
        self.piper_path = self.config.piper_path or "piper"
        self.voice_path = self.config.voice_path
        if self.voice_path and not Path(self.voice_path).exists():
            raise SpeechError(f"Voice model not found: {self.voice_path}")

        self._runner = runner
        self._platform = platform
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tts")
        self._observers: list[Callable[[SpeechResult], Any]] = []
        self._lock = threading.Lock()

    def set_voice(self, voice_path: Union[str, Path]) -> None:
        """
        Raises:
            SpeechError: If ``voice_path`` does not exist
        """
        if not Path(voice_path).exists():
            raise SpeechError(f"Voice model not found: {voice_path}")
        with self._lock:
            self.voice_path = str(voice_path)
        logger.info("[TTS] Voice set to %s", voice_path)

    def available_voices(self) -> list[str]:
        """Voices next to the current voice model."""
        return list_available_voices(Path(self.voice_path).parent if self.voice_path else ".")

    def add_observer(self, observer: Callable[[SpeechResult], Any]) -> None:
        with self._lock:
            self._observers.append(observer)

    def synthesis_command(self, wav_path: Path) -> list[str]:
        with self._lock:
            voice = self.voice_path
        cmd = [self.piper_path, "--model", voice, "--output_file", str(wav_path)]
        if self.config.speak_rate and self.config.speak_rate != 1.0:
            # Piper's length_scale is the inverse of speaking rate
            cmd += ["--length_scale", f"{1.0 / self.config.speak_rate:.3f}"]
        return cmd

    def speak(self, text: str) -> None:
        """
        Synthesize ``text`` and play it, blocking until playback ends.

        Raises:
            SpeechError: Piper or the audio player failed
        """
        if not text or not text.strip():
            return
        with tempfile.TemporaryDirectory(prefix="npu_assistant_tts_") as tmp:
            wav_path = Path(tmp) / "speech.wav"
            self._run(
                self.synthesis_command(wav_path),
                "Piper synthesis",
                input=text.encode("utf-8"),
            )
            self._run(playback_command(wav_path, self._platform), "Audio playback")

    def _run(self, cmd: list[str], what: str, input: Optional[bytes] = None) -> None:
        try:
            self._runner(
                cmd,
                input=input,
                check=True,
                capture_output=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise SpeechError(f"{what} failed: {cmd[0]} not found") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", "replace").strip()
            raise SpeechError(f"{what} failed (exit {exc.returncode}): {stderr}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SpeechError(f"{what} timed out after {self._timeout}s") from exc

    def speak_async(self, text: str) -> SpeechTask:
        """
        Queue ``text`` for speaking and return immediately.

        After ``close()`` the returned task is already done with a failed
        result.
        """
        try:
            future = self._executor.submit(self._speak_captured, text)
        except RuntimeError as exc:
            logger.warning("[TTS] Speaker is closed, dropping utterance: %s", exc)
            future = Future()
            error = SpeechError(f"Speaker is closed: {exc}")
            future.set_result(SpeechResult(text=text, success=False, error=error))
        return SpeechTask(text, future)

    def _speak_captured(self, text: str) -> SpeechResult:
        t0 = time.time()
        try:
            self.speak(text)
            result = SpeechResult(text=text, success=True, duration=time.time() - t0)
        except Exception as exc:  # noqa: BLE001 - background speech reports, never raises
            logger.warning("[TTS] Failed to speak: %s", exc)
            result = SpeechResult(text=text, success=False, error=exc, duration=time.time() - t0)

        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(result)
            except Exception as exc:  # noqa: BLE001
                logger.warning("[TTS] Observer %r failed: %s", observer, exc)
        return result

    def close(self) -> None:
        """Wait for queued speech and stop the worker."""
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "PiperSpeaker":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
