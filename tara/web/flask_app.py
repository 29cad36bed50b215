"""
Flask application serving the TARA chat endpoint.

``POST /api/chat`` accepts ``{messages: [{role, content}], userName?}``,
prepends the TARA system prompt, forwards the conversation to the model
gateway and answers ``{message, emotion, agent, confidence}`` with the
metadata block already split off.  Failures are answered with ``{error}``
and status 400 (bad request), 429 (rate limit), 402 (payment required) or
500 (anything else).
"""
from __future__ import annotations

from typing import Any, Optional

from flask import Flask, jsonify, request

from ..errors import PaymentRequired, RateLimited, TransportError, ValidationError
from ..llm.chat_pipeline import MAX_DISPLAY_NAME_CHARS, MAX_MESSAGE_CHARS, MAX_MESSAGES
from ..llm.gateway_client import GatewayClient
from ..llm.metadata import parse_reply
from ..llm.prompts import build_system_prompt
from ..utils.logging_system import quiet_loggers, setup_log_system

logger = setup_log_system("flask_app")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

_ROLES = ("user", "assistant")


def _validate_payload(data: Any) -> tuple[list, Optional[str]]:
    if not isinstance(data, dict):
        raise ValidationError("Invalid messages format")
    messages = data.get("messages")
    if not isinstance(messages, list):
        raise ValidationError("Invalid messages format")
    if len(messages) > MAX_MESSAGES:
        raise ValidationError("Too many messages in conversation")
    cleaned = []
    for msg in messages:
        if not isinstance(msg, dict) or msg.get("role") not in _ROLES or not isinstance(msg.get("content"), str):
            raise ValidationError("Invalid messages format")
        if len(msg["content"]) > MAX_MESSAGE_CHARS:
            raise ValidationError("Message content too long")
        cleaned.append({"role": msg["role"], "content": msg["content"]})
    user_name = data.get("userName")
    if user_name is not None and (not isinstance(user_name, str) or len(user_name) > MAX_DISPLAY_NAME_CHARS):
        raise ValidationError("Invalid userName")
    return cleaned, user_name or None


def _error(message: str, status: int) -> Any:
    return jsonify(error=message), status, CORS_HEADERS


def create_app(gateway: Optional[GatewayClient] = None) -> Flask:
    """Build the Flask app; ``gateway`` defaults to one configured from the environment."""
    app = Flask(__name__)
    app.config["TARA_GATEWAY"] = gateway or GatewayClient()

    # Werkzeug's per-request lines drown out the assistant's own logs
    quiet_loggers("werkzeug")

    @app.route("/api/chat", methods=["POST", "OPTIONS"])
    def api_chat() -> Any:
        """Answer one chat turn."""
        if request.method == "OPTIONS":
            return "", 204, CORS_HEADERS
        try:
            messages, user_name = _validate_payload(request.get_json(silent=True))
        except ValidationError as e:
            return _error(str(e), 400)

        conversation = [{"role": "system", "content": build_system_prompt(user_name)}] + messages
        try:
            content = app.config["TARA_GATEWAY"].complete(conversation)
        except RateLimited:
            return _error("Rate limit exceeded. Please try again later.", 429)
        except PaymentRequired:
            return _error("Payment required. Please add credits to continue.", 402)
        except TransportError as e:
            logger.error(f"Chat error: {e}")
            return _error("AI service unavailable", 500)
        except Exception as e:
            logger.error(f"Chat error: {e}", exc_info=True)
            return _error(str(e) or "Unknown error", 500)

        parsed = parse_reply(content)
        return jsonify(message=parsed.text, **parsed.metadata.to_dict()), 200, CORS_HEADERS

    @app.route("/api/health", methods=["GET"])
    def api_health() -> Any:
        return jsonify(status="ok")

    return app


def run_app(
    host: str = "127.0.0.1",
    port: int = 5000,
    debug: bool = False,
    *,
    gateway: Optional[GatewayClient] = None,
) -> None:
    """Run the Flask development server.  Intended to be called from main."""
    create_app(gateway).run(host=host, port=port, debug=debug, use_reloader=False)
