"""Voice recognition components for TARA.

This package exposes the ``SpeechInputSession`` class, which keeps a
continuous speech-to-text channel open and turns it into user utterances.
The Whisper-based backend lives in ``whisper_backend`` and is imported only
when voice mode is used.
"""

from .recognition_session import RecognitionStatus, SpeechInputSession  # noqa: F401

__all__ = ["SpeechInputSession", "RecognitionStatus"]
