"""
Metadata block carried at the end of a model reply.

The system prompt asks the model to finish every reply with a marker line
followed by a single JSON object::

    That's wonderful to hear!
    ###METADATA###
    {"emotion": "happy", "agent": "emotional", "confidence": 0.95}

``parse_reply`` splits such a reply into the text shown to the user and a
:class:`MetadataBlock`.  It never raises: a missing or broken block yields
the untouched input and the default metadata.

The object's extent is found with a brace scan that understands JSON strings
and escapes, so nested objects and braces inside string values do not cut
the block short.  When the marker appears more than once the last one wins.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Mapping, NamedTuple

from ..conversation import AgentTag, EmotionTag
from ..errors import MetadataParseFailure
from ..utils.logging_system import setup_log_system

logger = setup_log_system("metadata")

METADATA_MARKER = "###METADATA###"


@dataclass(frozen=True)
class MetadataBlock:
    emotion: EmotionTag = EmotionTag.NEUTRAL
    agent: AgentTag = AgentTag.CONVERSATIONAL
    confidence: float = 0.8

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "MetadataBlock":
        """Merge ``data`` onto the defaults, field by field."""
        defaults = cls()
        if not data:
            return defaults
        return cls(
            emotion=_coerce_enum(EmotionTag, data.get("emotion"), defaults.emotion),
            agent=_coerce_enum(AgentTag, data.get("agent"), defaults.agent),
            confidence=_coerce_confidence(data.get("confidence"), defaults.confidence),
        )

    def to_dict(self) -> dict:
        return {
            "emotion": self.emotion.value,
            "agent": self.agent.value,
            "confidence": self.confidence,
        }


DEFAULT_METADATA = MetadataBlock()


class ParsedReply(NamedTuple):
    text: str
    metadata: MetadataBlock
    tagged: bool


def _coerce_enum(enum_cls, value, default):
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    return default


def _coerce_confidence(value, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    if math.isnan(number):
        return default
    return min(1.0, max(0.0, number))


def _scan_object(text: str, start: int) -> int:
    """Return the index just past the JSON object opening at ``start``."""
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx + 1
    raise MetadataParseFailure("unbalanced metadata object")


def _extract(raw: str) -> tuple[int, int, dict]:
    marker_at = raw.rfind(METADATA_MARKER)
    if marker_at < 0:
        raise LookupError("no marker")
    obj_start = marker_at + len(METADATA_MARKER)
    while obj_start < len(raw) and raw[obj_start].isspace():
        obj_start += 1
    if obj_start >= len(raw) or raw[obj_start] != "{":
        raise MetadataParseFailure("marker not followed by an object")
    obj_end = _scan_object(raw, obj_start)
    try:
        data = json.loads(raw[obj_start:obj_end])
    except json.JSONDecodeError as e:
        raise MetadataParseFailure(str(e)) from e
    if not isinstance(data, dict):
        raise MetadataParseFailure("metadata is not an object")
    return marker_at, obj_end, data


def parse_reply(raw: str) -> ParsedReply:
    """Split ``raw`` into display text and metadata."""
    if not raw:
        return ParsedReply(raw or "", DEFAULT_METADATA, False)
    try:
        start, end, data = _extract(raw)
    except LookupError:
        return ParsedReply(raw, DEFAULT_METADATA, False)
    except MetadataParseFailure as e:
        logger.debug(f"Ignoring malformed metadata block: {e}")
        return ParsedReply(raw, DEFAULT_METADATA, False)
    text = (raw[:start] + raw[end:]).strip()
    return ParsedReply(text, MetadataBlock.from_mapping(data), True)


def render_reply(text: str, metadata: MetadataBlock) -> str:
    """Append the marker and a single-line metadata object to ``text``."""
    return f"{text}\n{METADATA_MARKER}\n{json.dumps(metadata.to_dict())}"
