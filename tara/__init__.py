"""
TARA assistant package.

TARA is an emotion-aware chat assistant.  This package holds its
voice-conversation engine: the reply metadata parser, the chat request
pipeline, the continuous speech-recognition and speech-synthesis sessions,
the turn coordinator that glues them together, and the chat endpoint
service.
"""

__all__ = [
    "voice_recognition",
    "llm",
    "tts",
    "web",
]
