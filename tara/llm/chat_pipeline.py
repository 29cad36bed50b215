"""
Chat request pipeline.

``ChatPipeline.send_turn`` turns the conversation history and a new user
message into an assistant turn.  It checks the request against the
endpoint's accepted envelope before anything is sent, allows a single
request in flight at a time, and converts every transport failure into an
apologetic assistant turn so the conversation never ends up without a
response.
"""
from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence

from ..conversation import AgentTag, ConversationTurn, EmotionTag, Speaker
from ..errors import FailureKind, RequestInFlightError, TransportError, ValidationError
from ..utils.logging_system import setup_log_system
from .chat_client import ChatClient
from .metadata import MetadataBlock, parse_reply

logger = setup_log_system("chat_pipeline")

MAX_MESSAGES = 50
MAX_MESSAGE_CHARS = 4000
MAX_DISPLAY_NAME_CHARS = 100

FALLBACK_MESSAGES: Dict[FailureKind, str] = {
    FailureKind.RATE_LIMITED: (
        "I'm getting a lot of messages right now. Please give me a moment and try again."
    ),
    FailureKind.PAYMENT_REQUIRED: (
        "I can't answer right now because the service is out of credits. Please try again later."
    ),
    FailureKind.SERVICE_UNAVAILABLE: (
        "I'm having trouble gathering my thoughts right now. Please try again in a moment."
    ),
    FailureKind.NETWORK: (
        "I couldn't reach my service just now. Please check your connection and try again."
    ),
}


def build_messages(history: Sequence[ConversationTurn], new_text: str) -> List[Dict[str, str]]:
    """Role-tagged message list: history minus welcome turns, then ``new_text``.

    History turns are clipped to the per-message limit; ``new_text`` is sent
    as is and left to ``validate_request``.
    """
    messages = []
    for turn in history:
        if turn.is_welcome:
            continue
        message = turn.as_message()
        if len(message["content"]) > MAX_MESSAGE_CHARS:
            message["content"] = message["content"][:MAX_MESSAGE_CHARS]
        messages.append(message)
    messages.append({"role": Speaker.USER.value, "content": new_text})
    return messages


def validate_request(messages: Sequence[Dict[str, str]], display_name: Optional[str]) -> None:
    """Raise ``ValidationError`` when the request would be refused by the endpoint."""
    if not messages or not messages[-1]["content"].strip():
        raise ValidationError("Message is empty")
    if len(messages) > MAX_MESSAGES:
        raise ValidationError(f"Too many messages in conversation ({len(messages)} > {MAX_MESSAGES})")
    for message in messages:
        if len(message["content"]) > MAX_MESSAGE_CHARS:
            raise ValidationError(f"Message content too long (limit {MAX_MESSAGE_CHARS} characters)")
    if display_name is not None and len(display_name) > MAX_DISPLAY_NAME_CHARS:
        raise ValidationError(f"Display name too long (limit {MAX_DISPLAY_NAME_CHARS} characters)")


def fallback_turn(kind: FailureKind) -> ConversationTurn:
    return ConversationTurn(
        speaker=Speaker.ASSISTANT,
        text=FALLBACK_MESSAGES[kind],
        emotion=EmotionTag.NEUTRAL,
        agent=AgentTag.CONVERSATIONAL,
        failure=kind,
    )


class ChatPipeline:
    """Sends one conversation's turns to the chat endpoint, one at a time."""

    def __init__(self, client: Optional[ChatClient] = None) -> None:
        self.client = client or ChatClient()
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        """True while a request is outstanding; callers disable input meanwhile."""
        return self._busy.locked()

    def claim(self) -> None:
        """Reserve the pipeline for one request; pair with ``release``.

        Raises ``RequestInFlightError`` when another request holds it.
        """
        if not self._busy.acquire(blocking=False):
            raise RequestInFlightError("A chat request is already in progress")

    def release(self) -> None:
        self._busy.release()

    def request(self, messages: Sequence[Dict[str, str]], display_name: Optional[str] = None) -> ConversationTurn:
        """Send validated ``messages`` while holding the claim and return the reply turn."""
        try:
            data = self.client.complete(list(messages), user_name=display_name)
        except TransportError as e:
            logger.warning(f"Chat request failed ({e.kind.value}): {e}")
            return fallback_turn(e.kind)
        return self._reply_turn(data)

    def send_turn(
        self,
        history: Sequence[ConversationTurn],
        new_text: str,
        display_name: Optional[str] = None,
    ) -> ConversationTurn:
        """
        Send ``new_text`` with ``history`` as context and return the reply turn.

        Raises ``ValidationError`` (nothing sent) or ``RequestInFlightError``.
        Transport failures never raise; they produce a fallback turn whose
        ``failure`` attribute names the classification.
        """
        messages = build_messages(history, new_text)
        validate_request(messages, display_name)

        self.claim()
        try:
            return self.request(messages, display_name)
        finally:
            self.release()

    @staticmethod
    def _reply_turn(data: dict) -> ConversationTurn:
        parsed = parse_reply(data["message"])
        metadata = parsed.metadata if parsed.tagged else MetadataBlock.from_mapping(data)
        text = parsed.text.strip()
        if not text:
            logger.warning("Chat endpoint returned an empty message.")
            return fallback_turn(FailureKind.SERVICE_UNAVAILABLE)
        logger.info(f"Assistant reply ({metadata.emotion.value}/{metadata.agent.value}): {text}")
        return ConversationTurn(
            speaker=Speaker.ASSISTANT,
            text=text,
            emotion=metadata.emotion,
            agent=metadata.agent,
            confidence=metadata.confidence,
        )
