"""
HTTP client for the TARA chat endpoint.

This module is a thin wrapper around ``requests``.  It posts the role-tagged
message list (and optionally the user's display name) to the configured
endpoint and returns the decoded JSON body.  Failures are raised as one of
the :mod:`tara.errors` transport classes so the pipeline can pick the right
fallback message.
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import requests

from ..errors import NetworkError, PaymentRequired, RateLimited, ServiceUnavailable
from ..utils.logging_system import setup_log_system

logger = setup_log_system("chat_client")


class ChatClient:
    """Simple client for the chat completion endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url or os.getenv("TARA_CHAT_URL", "http://127.0.0.1:5000/api/chat")
        self.api_key = api_key if api_key is not None else os.getenv("TARA_API_KEY")
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["apikey"] = self.api_key
        return headers

    def complete(self, messages: List[Dict[str, str]], user_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Send ``messages`` and return the endpoint's JSON reply.

        Parameters
        ----------
        messages:
            Role-tagged messages, oldest first.
        user_name:
            Display name used to personalise the reply.

        Returns
        -------
        dict
            The success body, ``{message, emotion, agent, confidence}``.

        Raises
        ------
        RateLimited, PaymentRequired, ServiceUnavailable, NetworkError
        """
        payload: Dict[str, Any] = {"messages": messages}
        if user_name:
            payload["userName"] = user_name
        try:
            response = requests.post(self.url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.Timeout as e:
            raise NetworkError(f"chat request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise NetworkError(f"chat request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimited(_error_text(response), status=429)
        if response.status_code == 402:
            raise PaymentRequired(_error_text(response), status=402)
        if not response.ok:
            raise ServiceUnavailable(_error_text(response), status=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ServiceUnavailable("chat endpoint returned a non-JSON body", status=response.status_code) from e
        if not isinstance(data, dict) or not isinstance(data.get("message"), str):
            raise ServiceUnavailable("chat endpoint returned an unexpected body", status=response.status_code)
        return data


def _error_text(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {response.status_code}"
