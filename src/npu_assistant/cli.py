"""
Command-line entry point: ``npu-assistant``.

    npu-assistant ask "qual a capital do Brasil?"
    npu-assistant ask --model coder "escreva um script python"
    npu-assistant look --image screenshot.png "o que tem na tela?"
    npu-assistant status
    npu-assistant voices models/voices
"""

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from .collaborators.capture import FileImageCapture, get_screen_capture
from .collaborators.speech import PiperSpeaker, list_available_voices
from .config import load_config
from .errors import AssistantError
from .runtime.catalog import build_catalog
from .runtime.manager import LifecycleManager
from .services.assistant import AssistantService
from .services.router import MODEL_FOR_INTENT, Intent
from .utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="npu-assistant",
        description="Local multi-model assistant running ONNX models on the NPU.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", default=None, help="Path to the YAML configuration.")
    parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, ...).")
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Answer a prompt (routed by intent unless --model is given).")
    ask.add_argument("prompt")
    ask.add_argument("--model", default=None, help="Catalog id to use directly.")
    ask.add_argument("--speak", action="store_true", help="Speak the reply with Piper.")
    ask.add_argument("--timeout", type=float, default=120.0, help="Seconds per attempt.")

    look = sub.add_parser("look", help="Ask the vision model about the screen or an image.")
    look.add_argument("prompt")
    look.add_argument("--image", default=None, help="Image file instead of a screenshot.")
    look.add_argument("--model", default=MODEL_FOR_INTENT[Intent.VISION])

    sub.add_parser("status", help="Print the model catalog and lifecycle state.")

    voices = sub.add_parser("voices", help="List Piper voice models in a directory.")
    voices.add_argument("directory")
    return parser


async def _ask(service: AssistantService, args: argparse.Namespace) -> int:
    if args.model:
        print(await service.generate(args.model, args.prompt))
        return 0
    response = await service.respond(args.prompt, speak=args.speak)
    if not response.success:
        print(f"[ERROR] {response.error}", file=sys.stderr)
        return 1
    print(response.text)
    if response.speech is not None:
        await asyncio.to_thread(response.speech.result)
    return 0


async def _look(service: AssistantService, args: argparse.Namespace) -> int:
    capture = FileImageCapture(args.image) if args.image else get_screen_capture()
    image = await asyncio.to_thread(capture.capture_screen)
    print(await service.analyze(args.model, image, args.prompt))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "voices":
        try:
            for voice in list_available_voices(args.directory):
                print(voice)
        except AssistantError as exc:
            print(f"[ERROR] {exc}", file=sys.stderr)
            return 1
        return 0

    try:
        config = load_config(args.config)
        manager = LifecycleManager(build_catalog(config), config.memory)
    except AssistantError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1

    if args.command == "status":
        print(json.dumps(manager.stats(), indent=2))
        return 0

    async def _run() -> int:
        speaker = PiperSpeaker(config.tts) if getattr(args, "speak", False) else None
        async with AssistantService(
            manager, speaker=speaker, timeout=getattr(args, "timeout", 120.0)
        ) as service:
            await asyncio.to_thread(manager.startup)
            if args.command == "ask":
                return await _ask(service, args)
            return await _look(service, args)

    try:
        return asyncio.run(_run())
    except AssistantError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
