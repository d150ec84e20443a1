#!/usr/bin/env python3
"""
Match Client - async HTTP client for the remote Kakomimasu match API
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import MatchApiError, TransientTransitionError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://api.kakomimasu.com/v1"

# Substring the API puts in errors raised while a match moves to the next turn
TRANSITION_MARKER = "during the transition step"


def is_transition_error(exc: BaseException) -> bool:
    """True for failures meaning "the match is mid-transition, try again shortly"."""
    if isinstance(exc, TransientTransitionError):
        return True
    return TRANSITION_MARKER in str(exc)


class MatchClient:
    """Thin wrapper over the match endpoints the bridge needs."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL, http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        if self._owns_client:
            await self._http.aclose()

    async def join_ai_match(self, guest_name: str, ai_name: str, *, board_name: str = "A-2",
                            n_agent: int = 3, total_turn: int = 10, transition_sec: int = 1,
                            operation_sec: int = 15) -> Dict[str, Any]:
        """Create a match against a server-side AI and join it."""
        body = {
            "guestName": guest_name,
            "aiName": ai_name,
            "boardName": board_name,
            "nAgent": n_agent,
            "totalTurn": total_turn,
            "transitionSec": transition_sec,
            "operationSec": operation_sec,
        }
        return await self._request("POST", "/matches/ai/players", json=body)

    async def join_game_id_match(self, game_id: str, guest_name: str) -> Dict[str, Any]:
        """Join an existing match by id."""
        return await self._request("POST", f"/matches/{game_id}/players", json={"guestName": guest_name})

    async def get_match(self, game_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/matches/{game_id}")

    async def submit_action(self, game_id: str, pic: str, actions: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Send this turn's actions. Returns at least {"turn": int}."""
        return await self._request(
            "PATCH",
            f"/matches/{game_id}/actions",
            json={"actions": actions},
            headers={"Authorization": f"PIC {pic}"},
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        response = await self._http.request(method, url, **kwargs)
        if response.is_success:
            return response.json() if response.content else {}

        message, error_code = _error_details(response)
        if TRANSITION_MARKER in message:
            raise TransientTransitionError(response.status_code, message, error_code)
        logger.warning(f"{method} {path} failed: HTTP {response.status_code} {message}")
        raise MatchApiError(response.status_code, message, error_code)


def _error_details(response: httpx.Response):
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(payload, dict):
        return str(payload.get("message", payload)), payload.get("errorCode")
    return str(payload), None
