"""
Client for the upstream OpenAI-compatible model gateway.

The chat endpoint service uses this to turn a message list into the model's
raw reply text.  HTTP status codes are mapped onto the transport error
classes so the service can answer with the matching status.
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import requests

from ..errors import NetworkError, PaymentRequired, RateLimited, ServiceUnavailable
from ..utils.logging_system import setup_log_system

logger = setup_log_system("gateway_client")


class GatewayClient:
    """Non-streaming chat completions against the model gateway."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("LLM_GATEWAY_KEY")
        self.url = url or os.getenv("LLM_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
        self.model = model or os.getenv("LLM_MODEL", "google/gemini-2.5-flash")
        self.timeout = timeout

    def complete(self, messages: List[Dict[str, str]]) -> str:
        """Return the assistant content for ``messages`` (system prompt included)."""
        if not self.api_key:
            raise RuntimeError("LLM_GATEWAY_KEY is not configured")
        payload: Dict[str, Any] = {"model": self.model, "messages": messages, "stream": False}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"gateway request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimited("Rate limit exceeded. Please try again later.", status=429)
        if response.status_code == 402:
            raise PaymentRequired("Payment required. Please add credits to continue.", status=402)
        if not response.ok:
            logger.error(f"AI gateway error: {response.status_code} {response.text[:500]}")
            raise ServiceUnavailable("AI service unavailable", status=response.status_code)

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ServiceUnavailable("AI gateway returned an unexpected body") from e
        return str(content or "")
