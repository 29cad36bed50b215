"""
Command-line entry point.

``tara serve``  runs the chat endpoint service.
``tara chat``   runs a typed conversation in the terminal.
``tara voice``  runs a hands-free voice conversation until Ctrl+C.
"""
from __future__ import annotations

import argparse
import asyncio
from typing import Optional, Sequence

from . import events
from .assistant_controller import AssistantController
from .config import TaraSettings
from .errors import RequestInFlightError, ValidationError
from .utils.logging_system import setup_log_system

logger = setup_log_system("main")


def build_voice_controller(settings: TaraSettings) -> AssistantController:
    """Controller wired to the local microphone, Whisper and the platform voices."""
    # Imported here so typed chat and the service work without audio libraries
    from .tts.pyttsx3_backend import Pyttsx3Backend
    from .voice_recognition.whisper_backend import SoundDeviceMicrophone, WhisperRecognitionBackend

    recognition = WhisperRecognitionBackend(
        model_size=settings.stt_model_size,
        device=settings.stt_device,
        compute_type=settings.stt_compute_type,
        language=settings.language,
    )
    return AssistantController(
        settings,
        recognition_backend=recognition,
        microphone=SoundDeviceMicrophone(recognition.cfg),
        synthesis_backend=Pyttsx3Backend(),
    )


def _print_turn(event: events.Event) -> None:
    turn = event.payload["turn"]
    if turn.role == "assistant":
        tag = f" [{turn.emotion.value}/{turn.agent.value}]" if turn.emotion and turn.agent else ""
        print(f"TARA{tag}: {turn.text}")
    else:
        print(f"You: {turn.text}")


def _print_error(event: events.Event) -> None:
    print(f"! {event.payload['error']}")


async def _chat(controller: AssistantController) -> None:
    controller.channel.subscribe(events.TURN, _print_turn)
    loop = asyncio.get_running_loop()
    print(controller.conversation.turns[0].text)
    while True:
        line = await loop.run_in_executor(None, input, "> ")
        if line.strip().lower() in ("/quit", "/exit"):
            break
        if line.strip().lower() == "/mute":
            controller.toggle_mute()
            continue
        try:
            await controller.send_text(line)
        except (ValidationError, RequestInFlightError) as e:
            print(f"! {e}")


async def _voice(controller: AssistantController) -> None:
    controller.channel.subscribe(events.TURN, _print_turn)
    controller.channel.subscribe(events.ERROR, _print_error)
    stopped = asyncio.Event()

    def _on_state(event: events.Event) -> None:
        logger.debug(f"Voice state: {event.payload['state'].value}")
        if not controller.coordinator.active:
            stopped.set()

    controller.channel.subscribe(events.STATE, _on_state)
    if not await controller.start_voice_mode():
        return
    logger.info("Speak now - TARA is listening! Press Ctrl+C to end the call.")
    await stopped.wait()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="tara", description="TARA emotion-aware assistant")
    sub = parser.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve", help="run the chat endpoint service")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)
    sub.add_parser("chat", help="typed conversation in the terminal")
    sub.add_parser("voice", help="hands-free voice conversation")
    args = parser.parse_args(argv)

    settings = TaraSettings.from_env()
    if args.command == "serve":
        from .llm.gateway_client import GatewayClient
        from .web.flask_app import run_app

        gateway = GatewayClient(
            api_key=settings.gateway_key, url=settings.gateway_url, model=settings.model
        )
        run_app(host=args.host, port=args.port, gateway=gateway)
        return

    controller = build_voice_controller(settings) if args.command == "voice" else AssistantController(settings)
    try:
        asyncio.run(_voice(controller) if args.command == "voice" else _chat(controller))
    except (KeyboardInterrupt, EOFError):
        logger.debug("Shutting down (interrupted)…")
    finally:
        controller.close()
        logger.info("Application terminated.")


if __name__ == "__main__":
    main()
