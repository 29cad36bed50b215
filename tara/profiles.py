"""
Display-name lookup for the signed-in user.

Profiles live in a ``profiles`` table exposed over PostgREST.  The lookup is
treated as an opaque key-value fetch: any failure is logged and the name is
simply left out of the system prompt.
"""
from __future__ import annotations

from typing import Dict, Optional

import requests

from .utils.logging_system import setup_log_system

logger = setup_log_system("profiles")


class ProfileLookup:
    """Fetches ``display_name`` by user id."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._cache: Dict[str, Optional[str]] = {}

    def display_name(self, user_id: str) -> Optional[str]:
        if user_id in self._cache:
            return self._cache[user_id]
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = requests.get(
                f"{self.base_url}/profiles",
                params={"id": f"eq.{user_id}", "select": "display_name"},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            rows = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Profile lookup failed for {user_id}: {e}")
            return None
        name = None
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            raw = rows[0].get("display_name")
            if raw:
                name = str(raw).strip() or None
        self._cache[user_id] = name
        return name


class StaticProfileLookup:
    """In-memory lookup, for tests and single-user setups."""

    def __init__(self, names: Optional[Dict[str, str]] = None) -> None:
        self._names = dict(names or {})

    def display_name(self, user_id: str) -> Optional[str]:
        return self._names.get(user_id)
