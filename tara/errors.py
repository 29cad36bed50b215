"""
Error taxonomy for the TARA conversation engine.

Parser and speech-session failures are handled where they happen and degrade
to safe defaults.  Transport failures are turned into a fallback assistant
turn by the chat pipeline, so callers normally only see ``ValidationError``,
``RequestInFlightError`` and the speech capability errors.
"""
from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Classification of a chat request that did not produce a reply."""

    RATE_LIMITED = "rate_limited"
    PAYMENT_REQUIRED = "payment_required"
    SERVICE_UNAVAILABLE = "service_unavailable"
    NETWORK = "network"


class TaraError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(TaraError, ValueError):
    """An outbound chat request does not fit the endpoint's accepted envelope."""


class RequestInFlightError(TaraError):
    """A chat request is already outstanding for this conversation."""


class TransportError(TaraError):
    """The chat endpoint could not be reached or refused the request."""

    kind: FailureKind = FailureKind.SERVICE_UNAVAILABLE

    def __init__(self, message: str = "", *, status: int | None = None) -> None:
        super().__init__(message or self.kind.value)
        self.status = status


class RateLimited(TransportError):
    kind = FailureKind.RATE_LIMITED


class PaymentRequired(TransportError):
    kind = FailureKind.PAYMENT_REQUIRED


class ServiceUnavailable(TransportError):
    kind = FailureKind.SERVICE_UNAVAILABLE


class NetworkError(TransportError):
    kind = FailureKind.NETWORK


class CapabilityUnsupported(TaraError):
    """The host offers no speech recognition or synthesis capability."""


UnsupportedError = CapabilityUnsupported


class PermissionDenied(TaraError):
    """Microphone access was refused."""


class MicrophoneNotFound(TaraError):
    """No audio input device is available."""


class NoSpeechDetected(TaraError):
    """The recogniser heard nothing.  Soft: the session keeps listening."""


class RecognitionError(TaraError):
    """Any other recognition failure.

    ``fatal`` errors have already torn the session down; the rest are
    informational and the session keeps going.
    """

    def __init__(self, message: str, *, code: str | None = None, fatal: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.fatal = fatal


class MetadataParseFailure(TaraError):
    """The metadata block after the marker could not be decoded."""


_TRANSPORT_ERRORS = {cls.kind: cls for cls in (RateLimited, PaymentRequired, ServiceUnavailable, NetworkError)}


def transport_error_for(kind: FailureKind, message: str = "") -> TransportError:
    """Exception instance describing a fallback turn's failure."""
    return _TRANSPORT_ERRORS[kind](message)
