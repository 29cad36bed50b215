"""
Central controller for the TARA assistant.

This module wires the conversation, the chat pipeline, the speech sessions
and the turn coordinator together.  The ``AssistantController`` class is
what front ends talk to: it sends typed messages, switches voice mode on and
off, mutes speech output and exposes the event channel the front end
subscribes to.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from . import events
from .config import TaraSettings
from .conversation import Conversation, ConversationTurn
from .errors import RequestInFlightError, transport_error_for
from .events import EventChannel
from .llm.chat_client import ChatClient
from .llm.chat_pipeline import (
    MAX_DISPLAY_NAME_CHARS,
    MAX_MESSAGES,
    ChatPipeline,
    build_messages,
    validate_request,
)
from .profiles import ProfileLookup
from .tts.synthesis_session import SpeechOutputSession, SynthesisBackend
from .turn_coordinator import TurnCoordinator, TurnState
from .utils.logging_system import setup_log_system
from .voice_recognition.recognition_session import (
    MicrophoneAccess,
    RecognitionBackend,
    SpeechInputSession,
)

logger = setup_log_system("assistant_controller")


class AssistantController:
    """Coordinates all subsystems of the TARA assistant."""

    def __init__(
        self,
        settings: Optional[TaraSettings] = None,
        *,
        recognition_backend: Optional[RecognitionBackend] = None,
        microphone: Optional[MicrophoneAccess] = None,
        synthesis_backend: Optional[SynthesisBackend] = None,
        client: Optional[ChatClient] = None,
        profiles=None,
        channel: Optional[EventChannel] = None,
    ) -> None:
        self.settings = settings or TaraSettings.from_env()
        s = self.settings

        self.conversation = Conversation()
        self.channel = channel or EventChannel()

        # Chat endpoint; one pipeline per conversation keeps one request in flight
        self.pipeline = ChatPipeline(
            client or ChatClient(url=s.chat_url, api_key=s.api_key, timeout=s.request_timeout)
        )

        # Optional display-name lookup used to personalise replies
        if profiles is None and s.profiles_url:
            profiles = ProfileLookup(s.profiles_url, api_key=s.api_key)
        self.profiles = profiles
        self._display_name: Optional[str] = None
        self._sending = False

        self.recognition = SpeechInputSession(
            recognition_backend, microphone, restart_delay=s.restart_delay
        )
        self.synthesis = SpeechOutputSession(
            synthesis_backend, preferences=s.voice_preferences, muted=not s.tts_enabled
        )
        self.coordinator = TurnCoordinator(
            self.recognition,
            self.synthesis,
            self.pipeline,
            self.conversation,
            channel=self.channel,
            display_name=self.display_name,
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def display_name(self) -> Optional[str]:
        """The user's display name, clipped to the endpoint's limit.

        Blocking (the lookup may hit the network); call it off the event loop.
        A name that is found is cached; a miss is asked for again next time.
        """
        if self._display_name is not None:
            return self._display_name
        if self.profiles is None or not self.settings.user_id:
            return None
        name = self.profiles.display_name(self.settings.user_id)
        if name and len(name) > MAX_DISPLAY_NAME_CHARS:
            logger.warning(f"Display name longer than {MAX_DISPLAY_NAME_CHARS} characters; clipping it.")
            name = name[:MAX_DISPLAY_NAME_CHARS].rstrip()
        self._display_name = name or None
        return self._display_name

    # ------------------------------------------------------------------
    # Typed chat
    # ------------------------------------------------------------------
    @property
    def input_enabled(self) -> bool:
        """False while a reply is pending; the front end disables its send button."""
        return (
            not self._sending
            and not self.pipeline.busy
            and self.coordinator.state != TurnState.DISPATCHING
        )

    async def send_text(self, text: str) -> ConversationTurn:
        """
        Send a typed message and return the assistant's reply turn.

        Raises ``ValidationError`` for a message the endpoint would refuse and
        ``RequestInFlightError`` while another reply is pending.  Both the
        user turn and the reply are appended to the conversation.
        """
        text = (text or "").strip()
        if not self.input_enabled:
            raise RequestInFlightError("Please wait for TARA to answer first.")

        self._sending = True
        try:
            loop = asyncio.get_running_loop()
            name = await loop.run_in_executor(None, self.display_name)
            history = self.conversation.context(limit=MAX_MESSAGES - 1)
            messages = build_messages(history, text)
            validate_request(messages, name)
            self.pipeline.claim()
            try:
                self._append(ConversationTurn.user(text))
                reply = await loop.run_in_executor(None, self.pipeline.request, messages, name)
            finally:
                self.pipeline.release()
        finally:
            self._sending = False
        self._append(reply)
        if reply.failure is not None:
            self.channel.publish(events.ERROR, error=transport_error_for(reply.failure, reply.text))

        # Typed replies are read out too, unless voice mode owns the speaker
        if not self.coordinator.active and self.synthesis.supported:
            self.synthesis.speak(reply.text)
        return reply

    # ------------------------------------------------------------------
    # Voice mode
    # ------------------------------------------------------------------
    async def start_voice_mode(self) -> bool:
        if not self.coordinator.active:
            # Typed-reply playback must not overlap the microphone
            self.synthesis.cancel()
        return await self.coordinator.start()

    def stop_voice_mode(self) -> None:
        self.coordinator.stop()

    def toggle_mute(self) -> bool:
        """Toggle speech output; returns True when muted."""
        muted = self.synthesis.toggle_mute()
        logger.info("Voice output muted." if muted else "Voice output enabled.")
        return muted

    def close(self) -> None:
        """Tear everything down; no speech may outlive the controller."""
        self.coordinator.stop()
        self.recognition.cancel()
        self.synthesis.close()

    def _append(self, turn: ConversationTurn) -> None:
        self.conversation.append(turn)
        self.channel.publish(events.TURN, turn=turn)

