"""
Turn-taking speech synthesis session.

``SpeechOutputSession`` plays one utterance at a time through a synthesis
backend.  Starting a new utterance silently cancels the previous one (no
queue).  Every utterance that starts reports ``on_started``; natural
completion or a playback error reports ``on_ended`` exactly once, which is
what lets the coordinator reopen the microphone only after the assistant
has finished talking.

Backend callbacks carry the id of the utterance they belong to, so a late
completion from a cancelled utterance cannot end the current one.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Optional, Protocol, Sequence

from ..config import DEFAULT_VOICE_PREFERENCES
from ..errors import CapabilityUnsupported
from ..utils.logging_system import setup_log_system

logger = setup_log_system("synthesis_session")


@dataclass(frozen=True)
class Voice:
    id: str
    name: str
    language: str = ""


class SynthesisBackend(Protocol):
    """Host text-to-speech capability."""

    available: bool

    def voices(self) -> Sequence[Voice]: ...

    def speak(
        self,
        text: str,
        voice: Optional[Voice],
        on_done: Callable[[], None],
        on_error: Callable[[str], None],
    ) -> None: ...

    def cancel(self) -> None: ...

    def close(self) -> None: ...


class SynthesisStatus(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"


def select_voice(voices: Sequence[Voice], preferences: Sequence[str] = DEFAULT_VOICE_PREFERENCES) -> Optional[Voice]:
    """
    Pick a voice by preference order.

    Each preference is matched case-insensitively as a substring of the voice
    name; the first preference with any match wins, and within it the first
    voice in catalog order.  ``None`` means the platform default.
    """
    for pref in preferences:
        needle = pref.lower()
        for voice in voices:
            if needle in voice.name.lower():
                return voice
    return None


class SpeechOutputSession:
    """Speaks assistant replies, one utterance at a time."""

    def __init__(
        self,
        backend: Optional[SynthesisBackend],
        *,
        on_started: Optional[Callable[[str], None]] = None,
        on_ended: Optional[Callable[[str], None]] = None,
        preferences: Sequence[str] = DEFAULT_VOICE_PREFERENCES,
        muted: bool = False,
    ) -> None:
        self._backend = backend
        self.on_started = on_started
        self.on_ended = on_ended
        self.preferences = tuple(preferences)
        self.muted = muted

        self.status = SynthesisStatus.IDLE
        self.utterance_text = ""
        self._utterance_id = 0
        self._voice: Optional[Voice] = None
        self._voice_resolved = False

    @property
    def supported(self) -> bool:
        return self._backend is not None and bool(getattr(self._backend, "available", False))

    @property
    def voice(self) -> Optional[Voice]:
        """Preferred voice, resolved lazily from the backend's catalog."""
        if not self._voice_resolved and self.supported:
            try:
                self._voice = select_voice(self._backend.voices(), self.preferences)
            except Exception as e:
                logger.warning(f"Could not read the voice catalog: {e}")
                self._voice = None
            self._voice_resolved = True
            if self._voice:
                logger.info(f"Using TTS voice: {self._voice.name}")
        return self._voice

    def speak(self, text: str) -> bool:
        """Speak ``text``, preempting anything already playing.

        Returns False when nothing was started (empty text or muted).
        """
        if not text or not text.strip() or self.muted:
            return False
        if not self.supported:
            raise CapabilityUnsupported("Speech synthesis is not supported on this host.")

        self._stop_current(notify=False)
        self._utterance_id += 1
        utterance_id = self._utterance_id
        self.status = SynthesisStatus.SPEAKING
        self.utterance_text = text
        if self.on_started:
            self.on_started(text)
        try:
            self._backend.speak(
                text,
                self.voice,
                partial(self._finish, utterance_id),
                partial(self._fail, utterance_id),
            )
        except Exception as e:
            logger.error(f"Error during TTS playback: {e}", exc_info=True)
            self._finish(utterance_id)
        return True

    def cancel(self) -> None:
        """Stop playback without reporting ``on_ended`` (used on teardown)."""
        self._stop_current(notify=False)

    def set_muted(self, muted: bool) -> None:
        """Mute or unmute.  Muting cuts the current utterance short and reports its end."""
        self.muted = muted
        if muted:
            self._stop_current(notify=True)

    def toggle_mute(self) -> bool:
        self.set_muted(not self.muted)
        return self.muted

    def close(self) -> None:
        """Release the backend; nothing may keep playing afterwards."""
        self._stop_current(notify=False)
        if self._backend is not None:
            try:
                self._backend.close()
            except Exception as e:
                logger.error(f"Error closing TTS backend: {e}", exc_info=True)

    # ------------------------------------------------------------------
    def _stop_current(self, *, notify: bool) -> None:
        if self.status != SynthesisStatus.SPEAKING:
            return
        text = self.utterance_text
        self._utterance_id += 1
        self.status = SynthesisStatus.IDLE
        self.utterance_text = ""
        try:
            self._backend.cancel()
        except Exception as e:
            logger.error(f"Error cancelling TTS playback: {e}", exc_info=True)
        if notify and self.on_ended:
            self.on_ended(text)

    def _finish(self, utterance_id: int) -> None:
        if utterance_id != self._utterance_id or self.status != SynthesisStatus.SPEAKING:
            return
        text = self.utterance_text
        self.status = SynthesisStatus.IDLE
        self.utterance_text = ""
        if self.on_ended:
            self.on_ended(text)

    def _fail(self, utterance_id: int, code: str) -> None:
        if utterance_id == self._utterance_id:
            logger.warning(f"TTS playback error: {code}")
        self._finish(utterance_id)
