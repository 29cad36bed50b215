"""Text-to-speech (TTS) support for TARA.

This package exposes :class:`~tara.tts.synthesis_session.SpeechOutputSession`,
which plays one assistant reply at a time and reports when speech starts and
ends.  The platform backend lives in ``pyttsx3_backend`` and is imported only
when voice mode is used.
"""

from .synthesis_session import SpeechOutputSession, Voice, select_voice  # noqa: F401

__all__ = ["SpeechOutputSession", "Voice", "select_voice"]
