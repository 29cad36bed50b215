"""
Voice-mode turn coordinator.

The coordinator is the single state machine that glues the speech input
session, the chat pipeline and the speech output session together::

    IDLE --start--> LISTENING --utterance--> DISPATCHING --reply--> SPEAKING
      ^                 ^                                              |
      |                 +------------------ speech ended --------------+
      +------------------------ stop (from any state) ---------------------

While a turn is being dispatched or spoken the microphone is held, so the
assistant never transcribes its own voice.  Each dispatched turn gets a
sequence number; a reply that comes back after ``stop`` (or after another
turn started) no longer matches and is dropped.

Everything runs on one asyncio loop.  The blocking chat request runs in the
loop's default executor.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, Optional

from . import events
from .conversation import Conversation, ConversationTurn
from .errors import (
    CapabilityUnsupported,
    MicrophoneNotFound,
    NoSpeechDetected,
    PermissionDenied,
    RecognitionError,
    RequestInFlightError,
    TaraError,
    ValidationError,
    transport_error_for,
)
from .events import EventChannel
from .llm.chat_pipeline import MAX_MESSAGES, ChatPipeline, build_messages, validate_request
from .tts.synthesis_session import SpeechOutputSession
from .utils.logging_system import setup_log_system
from .voice_recognition.recognition_session import SpeechInputSession

logger = setup_log_system("turn_coordinator")


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    DISPATCHING = "dispatching"
    SPEAKING = "speaking"


class TurnCoordinator:
    """Runs voice conversations: listen, ask, speak, listen again."""

    def __init__(
        self,
        recognition: SpeechInputSession,
        synthesis: SpeechOutputSession,
        pipeline: ChatPipeline,
        conversation: Conversation,
        *,
        channel: Optional[EventChannel] = None,
        display_name: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.recognition = recognition
        self.synthesis = synthesis
        self.pipeline = pipeline
        self.conversation = conversation
        self.channel = channel or EventChannel()
        self._display_name = display_name

        self.state = TurnState.IDLE
        self.transcript = ""
        self._seq = 0
        self._task: Optional[asyncio.Task] = None

        recognition.on_interim = self._on_interim
        recognition.on_utterance = self._on_utterance
        recognition.on_error = self._on_recognition_error
        synthesis.on_started = self._on_speech_started
        synthesis.on_ended = self._on_speech_ended

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start(self) -> bool:
        """Enter voice mode.  Returns False (and reports why) if it could not start."""
        if self.state != TurnState.IDLE:
            return True
        self._set_state(TurnState.LISTENING)
        try:
            await self.recognition.start()
        except (CapabilityUnsupported, PermissionDenied, MicrophoneNotFound, RecognitionError) as e:
            logger.error(f"Could not start voice mode: {e}")
            self._teardown()
            self._report(e)
            return False
        except Exception as e:
            logger.error(f"Unexpected error while starting voice mode: {e}", exc_info=True)
            self._teardown()
            self._report(e)
            return False
        if self.state != TurnState.LISTENING or not self.recognition.active:
            # stop() was called while the microphone prompt was open
            if self.state != TurnState.IDLE:
                self._teardown()
            return False
        logger.info("Voice mode started; TARA is listening.")
        return True

    def stop(self) -> None:
        """Leave voice mode immediately.  An in-flight reply is discarded."""
        if self.state == TurnState.IDLE:
            return
        self._teardown()
        logger.info("Voice mode stopped.")

    @property
    def active(self) -> bool:
        return self.state != TurnState.IDLE

    async def wait_for_dispatch(self) -> None:
        """Wait for the in-flight dispatch, if any (used by tests and shutdown)."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Recognition events
    # ------------------------------------------------------------------
    def _on_interim(self, text: str) -> None:
        if self.state != TurnState.LISTENING:
            return
        self.transcript = text
        self.channel.publish(events.TRANSCRIPT, text=text, final=False)

    def _on_utterance(self, text: str) -> None:
        if self.state != TurnState.LISTENING:
            logger.debug(f"Ignoring utterance while {self.state.value}: {text}")
            return
        self.transcript = ""
        self.channel.publish(events.TRANSCRIPT, text=text, final=True)
        self.recognition.hold()
        self._seq += 1
        self._set_state(TurnState.DISPATCHING)
        self._task = asyncio.get_running_loop().create_task(self._dispatch(self._seq, text))

    def _on_recognition_error(self, error: TaraError) -> None:
        if isinstance(error, NoSpeechDetected):
            return
        if isinstance(error, PermissionDenied) or (isinstance(error, RecognitionError) and error.fatal):
            if self.state != TurnState.IDLE:
                self._teardown()
            self._report(error)
            return
        self._report(error)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def _dispatch(self, seq: int, text: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            # The profile lookup may hit the network
            name = await loop.run_in_executor(None, self._resolve_display_name)
            if not self._is_current(seq, TurnState.DISPATCHING):
                return
            history = self.conversation.context(limit=MAX_MESSAGES - 1)
            messages = build_messages(history, text)
            validate_request(messages, name)
            # Claim before appending: a refused turn never enters the conversation
            self.pipeline.claim()
        except (ValidationError, RequestInFlightError) as e:
            if self._is_current(seq, TurnState.DISPATCHING):
                logger.warning(f"Turn not sent: {e}")
                self._report(e)
                self._resume_listening()
            return
        except Exception as e:
            logger.error(f"Unexpected error while preparing turn: {e}", exc_info=True)
            if self._is_current(seq, TurnState.DISPATCHING):
                self._report(e)
                self._resume_listening()
            return

        try:
            self._append(ConversationTurn.user(text))
            reply = await loop.run_in_executor(None, self.pipeline.request, messages, name)
        except Exception as e:
            logger.error(f"Unexpected error while dispatching turn: {e}", exc_info=True)
            if self._is_current(seq, TurnState.DISPATCHING):
                self._report(e)
                self._resume_listening()
            return
        finally:
            self.pipeline.release()

        if not self._is_current(seq, TurnState.DISPATCHING):
            logger.info("Discarding reply for a turn that is no longer active.")
            return

        self._append(reply)
        if reply.failure is not None:
            self._report(transport_error_for(reply.failure, reply.text))

        self._set_state(TurnState.SPEAKING)
        spoken = False
        if self.synthesis.supported:
            try:
                spoken = self.synthesis.speak(reply.text)
            except CapabilityUnsupported:
                spoken = False
        # speak() may already have finished synchronously
        if not spoken and self._is_current(seq, TurnState.SPEAKING):
            self._resume_listening()

    # ------------------------------------------------------------------
    # Synthesis events
    # ------------------------------------------------------------------
    def _on_speech_started(self, text: str) -> None:
        if self.state != TurnState.SPEAKING:
            return
        self.channel.publish(events.SPEECH_STARTED, text=text)

    def _on_speech_ended(self, text: str) -> None:
        if self.state != TurnState.SPEAKING:
            return
        self.channel.publish(events.SPEECH_ENDED, text=text)
        self._resume_listening()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve_display_name(self) -> Optional[str]:
        return self._display_name() if self._display_name else None

    def _is_current(self, seq: int, state: TurnState) -> bool:
        return seq == self._seq and self.state == state

    def _resume_listening(self) -> None:
        if not self.recognition.active:
            self._teardown()
            return
        self._set_state(TurnState.LISTENING)
        self.recognition.resume()

    def _teardown(self) -> None:
        self._seq += 1
        self.transcript = ""
        self._set_state(TurnState.IDLE)
        self.recognition.stop()
        self.synthesis.cancel()

    def _append(self, turn: ConversationTurn) -> None:
        self.conversation.append(turn)
        self.channel.publish(events.TURN, turn=turn)

    def _report(self, error) -> None:
        self.channel.publish(events.ERROR, error=error)

    def _set_state(self, state: TurnState) -> None:
        if state == self.state:
            return
        logger.debug(f"Turn state {self.state.value} -> {state.value}")
        self.state = state
        self.channel.publish(events.STATE, state=state)
