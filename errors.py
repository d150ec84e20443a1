#!/usr/bin/env python3
"""
Error types shared by the router, the turn engine and the match client
"""

from typing import Any, Dict, Optional


class BridgeError(ValueError):
    """Base error. Messages carry a CODE: prefix so tool failures stay greppable."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        self.detail = message
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.__class__.__name__, "code": self.code, "message": self.detail}


class ProtocolSessionError(BridgeError):
    """Inbound request has no usable session. Answered by the router, never raised past it."""

    code = "BAD_REQUEST"
    jsonrpc_code = -32000

    def __init__(self, message: str = "Bad Request: No valid session ID provided"):
        super().__init__(message)

    def to_jsonrpc(self) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "error": {"code": self.jsonrpc_code, "message": self.detail},
            "id": None,
        }


class SessionMissingError(BridgeError):
    code = "NO_SESSION"


class GameNotJoinedError(BridgeError):
    code = "GAME_NOT_JOINED"


class MatchEndedError(BridgeError):
    code = "MATCH_ENDED"


class TurnSyncTimeoutError(BridgeError):
    code = "POLL_LIMIT"


class MatchApiError(BridgeError):
    """Non-2xx answer from the remote match API."""

    code = "MATCH_API"

    def __init__(self, status_code: int, message: str, error_code: Optional[int] = None):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(f"HTTP {status_code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["status_code"] = self.status_code
        if self.error_code is not None:
            payload["error_code"] = self.error_code
        return payload


class TransientTransitionError(MatchApiError):
    """The match is between turns and does not accept the operation yet."""

    code = "TRANSITION"
