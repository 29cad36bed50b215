"""
Conversation data model.

A conversation is an ordered, append-only list of immutable turns.  It starts
with a synthetic welcome turn that is shown to the user but never sent to
the chat endpoint.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, List, Optional

from .errors import FailureKind


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class EmotionTag(str, Enum):
    HAPPY = "happy"
    SAD = "sad"
    NEUTRAL = "neutral"
    EXCITED = "excited"
    CALM = "calm"


class AgentTag(str, Enum):
    EMOTIONAL = "emotional"
    CONVERSATIONAL = "conversational"
    ANALYTICAL = "analytical"


WELCOME_MESSAGE = (
    "Hello! I'm TARA, your emotion-aware AI assistant. I'm here to understand "
    "and respond to your feelings. How are you today?"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConversationTurn:
    """One message in the conversation."""

    speaker: Speaker
    text: str
    emotion: Optional[EmotionTag] = None
    agent: Optional[AgentTag] = None
    confidence: Optional[float] = None
    created_at: datetime = field(default_factory=_now)
    failure: Optional[FailureKind] = None
    is_welcome: bool = False

    @classmethod
    def user(cls, text: str) -> "ConversationTurn":
        return cls(speaker=Speaker.USER, text=text)

    @property
    def role(self) -> str:
        return self.speaker.value

    def as_message(self) -> dict:
        """Role-tagged message as sent to the chat endpoint."""
        return {"role": self.role, "content": self.text}


class Conversation:
    """Append-only sequence of turns; the only history the pipeline sees."""

    def __init__(self, *, welcome: bool = True) -> None:
        self._turns: List[ConversationTurn] = []
        if welcome:
            self._turns.append(
                ConversationTurn(
                    speaker=Speaker.ASSISTANT,
                    text=WELCOME_MESSAGE,
                    emotion=EmotionTag.CALM,
                    agent=AgentTag.EMOTIONAL,
                    is_welcome=True,
                )
            )

    def append(self, turn: ConversationTurn) -> ConversationTurn:
        self._turns.append(turn)
        return turn

    @property
    def turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def context(self, limit: int | None = None) -> List[ConversationTurn]:
        """Most recent turns worth sending as context, at most ``limit`` of them.

        The welcome seed and fallback turns produced by failed requests are
        left out.
        """
        history = [t for t in self._turns if not t.is_welcome and t.failure is None]
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return history

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self._turns)
