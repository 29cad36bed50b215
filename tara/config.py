"""
Runtime settings for TARA.

Values come from the process environment, after a ``.env`` file (if any) has
been loaded with python-dotenv.  Every setting has a default so the text chat
works against a local endpoint without any configuration.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_VOICE_PREFERENCES: Tuple[str, ...] = (
    "Google UK English Female",
    "Samantha",
    "Microsoft Zira",
    "Karen",
    "natural",
    "female",
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class TaraSettings:
    # Chat endpoint consumed by the pipeline
    chat_url: str = "http://127.0.0.1:5000/api/chat"
    api_key: Optional[str] = None
    request_timeout: float = 30.0

    # Identity used to personalise the system prompt
    user_id: Optional[str] = None
    profiles_url: Optional[str] = None

    # Voice mode
    language: str = "en"
    restart_delay: float = 0.25
    tts_enabled: bool = True
    voice_preferences: Tuple[str, ...] = field(default=DEFAULT_VOICE_PREFERENCES)
    stt_model_size: str = "small"
    stt_device: str = "auto"
    stt_compute_type: Optional[str] = None

    # Upstream model gateway used by the chat endpoint service
    gateway_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    gateway_key: Optional[str] = None
    model: str = "google/gemini-2.5-flash"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "TaraSettings":
        """Build settings from the environment (and ``.env`` when ``dotenv``)."""
        if dotenv:
            load_dotenv()
        defaults = cls()
        prefs = os.getenv("TARA_VOICE_PREFERENCES")
        return cls(
            chat_url=os.getenv("TARA_CHAT_URL", defaults.chat_url),
            api_key=os.getenv("TARA_API_KEY") or None,
            request_timeout=_env_float("TARA_REQUEST_TIMEOUT", defaults.request_timeout),
            user_id=os.getenv("TARA_USER_ID") or None,
            profiles_url=os.getenv("TARA_PROFILES_URL") or None,
            language=os.getenv("TARA_LANGUAGE", defaults.language),
            restart_delay=_env_float("TARA_RESTART_DELAY", defaults.restart_delay),
            tts_enabled=_env_bool("TARA_TTS_ENABLED", defaults.tts_enabled),
            voice_preferences=(
                tuple(p.strip() for p in prefs.split(",") if p.strip())
                if prefs
                else defaults.voice_preferences
            ),
            stt_model_size=os.getenv("STT_MODEL_SIZE", defaults.stt_model_size),
            stt_device=os.getenv("STT_DEVICE", defaults.stt_device),
            stt_compute_type=os.getenv("STT_COMPUTE_TYPE") or None,
            gateway_url=os.getenv("LLM_GATEWAY_URL", defaults.gateway_url),
            gateway_key=os.getenv("LLM_GATEWAY_KEY") or None,
            model=os.getenv("LLM_MODEL", defaults.model),
        )
