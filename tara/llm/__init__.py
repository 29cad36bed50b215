"""Language model integration for TARA.

``ChatPipeline`` sends conversation turns to the chat endpoint through
``ChatClient``; ``parse_reply`` splits the metadata block off a model reply.
The endpoint service itself talks to the model gateway via ``GatewayClient``.
"""

from .chat_client import ChatClient  # noqa: F401
from .chat_pipeline import ChatPipeline  # noqa: F401
from .gateway_client import GatewayClient  # noqa: F401
from .metadata import METADATA_MARKER, MetadataBlock, parse_reply, render_reply  # noqa: F401

__all__ = [
    "ChatClient",
    "ChatPipeline",
    "GatewayClient",
    "METADATA_MARKER",
    "MetadataBlock",
    "parse_reply",
    "render_reply",
]
