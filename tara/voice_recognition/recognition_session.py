"""
Continuous speech-recognition session.

``SpeechInputSession`` sits between a recognition backend (the host's
speech-to-text capability) and the turn coordinator.  It turns the backend's
stream of interim/final results, errors and end-of-channel notifications
into completed user utterances, and keeps the channel open across turns
until it is explicitly stopped.

``active`` is the only thing that decides whether the channel may be
(re)started.  It is set before the asynchronous start and cleared before the
backend is asked to stop, so a late callback cannot bring a torn-down
session back.  Every start opens a new channel generation; callbacks from an
older generation are dropped.

All methods run on the asyncio event loop.  Backends that produce results on
worker threads must hand them over with ``loop.call_soon_threadsafe``.
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Callable, Optional, Protocol

from ..errors import (
    CapabilityUnsupported,
    MicrophoneNotFound,
    NoSpeechDetected,
    PermissionDenied,
    RecognitionError,
    TaraError,
)
from ..utils.logging_system import setup_log_system

logger = setup_log_system("recognition_session")

PERMISSION_ERRORS = ("permission-denied", "not-allowed", "service-not-allowed")


class RecognitionStatus(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    FINALIZING = "finalizing"
    # Active, but the channel is not running (held, or between restarts)
    STOPPED = "stopped"


class RecognitionListener(Protocol):
    def on_result(self, transcript: str, is_final: bool) -> None: ...

    def on_error(self, code: str) -> None: ...

    def on_end(self) -> None: ...


class RecognitionBackend(Protocol):
    """Host speech-to-text capability."""

    available: bool

    def start(self, listener: RecognitionListener) -> None: ...

    def stop(self) -> None: ...

    def abort(self) -> None: ...


class MicrophoneAccess(Protocol):
    async def request_access(self) -> None:
        """Raise ``PermissionDenied`` or ``MicrophoneNotFound`` when capture is impossible."""


class _Channel:
    """Listener bound to one channel generation."""

    def __init__(self, session: "SpeechInputSession", generation: int) -> None:
        self._session = session
        self._generation = generation

    def _current(self) -> bool:
        return self._session._generation == self._generation

    def on_result(self, transcript: str, is_final: bool) -> None:
        if self._current():
            self._session._handle_result(transcript, is_final)

    def on_error(self, code: str) -> None:
        if self._current():
            self._session._handle_error(code)

    def on_end(self) -> None:
        if self._current():
            self._session._handle_end()


class SpeechInputSession:
    """Lifecycle controller for a live speech-to-text channel."""

    def __init__(
        self,
        backend: Optional[RecognitionBackend],
        microphone: Optional[MicrophoneAccess] = None,
        *,
        on_interim: Optional[Callable[[str], None]] = None,
        on_utterance: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[TaraError], None]] = None,
        restart_delay: float = 0.25,
        max_restarts: int = 20,
        min_channel_seconds: float = 1.0,
    ) -> None:
        self._backend = backend
        self._microphone = microphone
        self.on_interim = on_interim
        self.on_utterance = on_utterance
        self.on_error = on_error
        self.restart_delay = max(0.0, restart_delay)
        self.max_restarts = max_restarts
        # A channel that ran at least this long counts as healthy
        self.min_channel_seconds = min_channel_seconds

        self.status = RecognitionStatus.IDLE
        self.pending_text = ""
        self.active = False

        self._held = False
        self._generation = 0
        self._restarts = 0
        self._channel_opened_at = 0.0
        self._channel_healthy = False
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def supported(self) -> bool:
        return self._backend is not None and bool(getattr(self._backend, "available", False))

    @property
    def held(self) -> bool:
        return self._held

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Ask for the microphone and start listening continuously."""
        if not self.supported:
            raise CapabilityUnsupported("Speech recognition is not supported on this host.")
        if self.active:
            logger.debug("Recognition session already active.")
            return
        self._loop = asyncio.get_running_loop()
        self.active = True
        self._held = False
        self._restarts = 0
        try:
            if self._microphone is not None:
                await self._microphone.request_access()
        except Exception:
            self.active = False
            self.status = RecognitionStatus.IDLE
            raise
        if not self.active:
            logger.debug("Recognition session stopped while waiting for microphone access.")
            return
        try:
            self._open_channel()
        except Exception as e:
            self.active = False
            self.status = RecognitionStatus.IDLE
            logger.error(f"Failed to start speech recognition: {e}", exc_info=True)
            raise RecognitionError(f"Could not start speech recognition: {e}", fatal=True) from e
        self.status = RecognitionStatus.LISTENING
        logger.info("Speech recognition started.")

    def stop(self) -> None:
        """Stop listening; results still in flight are discarded."""
        self._teardown(abort=False)

    def cancel(self) -> None:
        """Like ``stop`` but aborts the channel without waiting for a final result."""
        self._teardown(abort=True)

    def hold(self) -> None:
        """Pause the channel while the assistant thinks or speaks."""
        if not self.active or self._held:
            return
        self._held = True
        self._cancel_restart()
        self.pending_text = ""
        self.status = RecognitionStatus.STOPPED
        # Bumping the generation drops whatever the stopped channel still reports
        self._generation += 1
        self._call_backend("stop")
        logger.debug("Speech recognition held.")

    def resume(self) -> None:
        """Reopen the channel after ``hold``."""
        if not self.active or not self._held:
            return
        self._held = False
        self._restarts = 0
        try:
            self._open_channel()
        except Exception as e:
            logger.error(f"Failed to resume speech recognition: {e}", exc_info=True)
            self._fail(RecognitionError(f"Could not resume speech recognition: {e}", fatal=True))
            return
        self.status = RecognitionStatus.LISTENING
        logger.debug("Speech recognition resumed.")

    # ------------------------------------------------------------------
    # Backend events
    # ------------------------------------------------------------------
    def _handle_result(self, transcript: str, is_final: bool) -> None:
        if not self.active or self._held:
            return
        if not is_final:
            self.pending_text = transcript
            if self.on_interim:
                self.on_interim(transcript)
            return

        self.status = RecognitionStatus.FINALIZING
        self._channel_healthy = True
        text = (transcript or self.pending_text).strip()
        self.pending_text = ""
        self._restarts = 0
        if text:
            logger.info(f"User said: {text}")
            if self.on_utterance:
                self.on_utterance(text)
        # The utterance handler may have held or stopped the session
        if self.active and not self._held:
            self.status = RecognitionStatus.LISTENING

    def _handle_error(self, code: str) -> None:
        if code in PERMISSION_ERRORS:
            if not self.active:
                return
            logger.error("Microphone permission denied; stopping speech recognition.")
            self._teardown(abort=True)
            self._notify(PermissionDenied("Microphone access was denied."))
            return
        if not self.active:
            return
        if code == "no-speech":
            self._channel_healthy = True
            logger.debug("No speech detected, continuing to listen…")
            self._notify(NoSpeechDetected("No speech detected."))
        elif code == "aborted":
            logger.debug("Speech recognition aborted.")
        else:
            logger.warning(f"Speech recognition error: {code}")
            self._notify(RecognitionError(f"Speech recognition error: {code}", code=code))

    def _handle_end(self) -> None:
        if not self.active:
            self.status = RecognitionStatus.IDLE
            return
        if self._held:
            return
        self.pending_text = ""
        self.status = RecognitionStatus.STOPPED
        # Only channels that die right after opening count towards the limit
        if self._channel_healthy or time.monotonic() - self._channel_opened_at >= self.min_channel_seconds:
            self._restarts = 0
        if self._restarts >= self.max_restarts:
            logger.error(f"Speech recognition ended {self._restarts} times in a row; giving up.")
            self._fail(RecognitionError("Speech recognition keeps ending; voice mode stopped.", fatal=True))
            return
        self._cancel_restart()
        loop = self._loop or asyncio.get_running_loop()
        self._restart_handle = loop.call_later(self.restart_delay, self._restart)

    def _restart(self) -> None:
        self._restart_handle = None
        if not self.active or self._held:
            return
        self._restarts += 1
        try:
            self._open_channel()
        except Exception as e:
            logger.error(f"Error restarting recognition: {e}", exc_info=True)
            self._fail(RecognitionError(f"Could not restart speech recognition: {e}", fatal=True))
            return
        self.status = RecognitionStatus.LISTENING
        logger.debug("Speech recognition restarted after end of channel.")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _open_channel(self) -> None:
        self._generation += 1
        self._channel_opened_at = time.monotonic()
        self._channel_healthy = False
        self._backend.start(_Channel(self, self._generation))

    def _teardown(self, *, abort: bool) -> None:
        was_active = self.active
        self.active = False
        self._held = False
        self._cancel_restart()
        self.pending_text = ""
        self.status = RecognitionStatus.IDLE
        self._generation += 1
        if was_active:
            self._call_backend("abort" if abort else "stop")
            logger.info("Speech recognition stopped.")

    def _fail(self, error: RecognitionError) -> None:
        self._teardown(abort=True)
        self._notify(error)

    def _call_backend(self, method: str) -> None:
        if self._backend is None:
            return
        try:
            getattr(self._backend, method)()
        except Exception as e:
            logger.error(f"Error calling recognition {method}(): {e}", exc_info=True)

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _notify(self, error: TaraError) -> None:
        if self.on_error:
            self.on_error(error)


__all__ = [
    "MicrophoneAccess",
    "MicrophoneNotFound",
    "RecognitionBackend",
    "RecognitionListener",
    "RecognitionStatus",
    "SpeechInputSession",
]
