#!/usr/bin/env python3
"""
Session Registry - persisted per-session match records with a sliding TTL
"""

import json
import logging
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import anyio

logger = logging.getLogger(__name__)

# Nothing deletes a record if the client never closes its session, so it expires after about a day
DEFAULT_TTL_SECONDS = 60 * 60 * 24
KEY_PREFIX = "sessions"


@dataclass
class SessionRecord:
    """What a session remembers about its match. Empty until a match is joined."""
    pic: Optional[str] = None
    game_id: Optional[str] = None
    player_index: Optional[int] = None
    now_turn: Optional[int] = None

    @property
    def joined(self) -> bool:
        return self.game_id is not None

    def to_dict(self) -> Dict[str, Any]:
        if not self.joined:
            return {}
        return {
            "data": {
                "pic": self.pic,
                "gameId": self.game_id,
                "playerIndex": self.player_index,
                "nowTurn": self.now_turn,
            }
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SessionRecord":
        data = payload.get("data")
        if not data:
            return cls()
        return cls(
            pic=data["pic"],
            game_id=data["gameId"],
            player_index=data["playerIndex"],
            now_turn=data["nowTurn"],
        )


class MemorySessionStore:
    """Process-local key/value store with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            self._items.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: float):
        self._items[key] = (value, self._clock() + ttl)

    async def delete(self, key: str):
        self._items.pop(key, None)


class SqliteSessionStore:
    """
    sqlite-backed key/value store so records outlive the process.

    Each call opens its own connection on a worker thread. Expired rows read as
    absent and are purged on the next write.
    """

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        self.path = path
        self._clock = clock
        with closing(sqlite3.connect(self.path)) as conn, conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL, expires_at REAL NOT NULL)"
            )

    def _get(self, key: str) -> Optional[str]:
        with closing(sqlite3.connect(self.path)) as conn:
            row = conn.execute(
                "SELECT value FROM kv WHERE key = ? AND expires_at > ?", (key, self._clock())
            ).fetchone()
        return row[0] if row else None

    def _set(self, key: str, value: str, ttl: float):
        now = self._clock()
        with closing(sqlite3.connect(self.path)) as conn, conn:
            conn.execute("DELETE FROM kv WHERE expires_at <= ?", (now,))
            conn.execute(
                "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
                (key, value, now + ttl),
            )

    def _delete(self, key: str):
        with closing(sqlite3.connect(self.path)) as conn, conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    async def get(self, key: str) -> Optional[str]:
        return await anyio.to_thread.run_sync(self._get, key)

    async def set(self, key: str, value: str, ttl: float):
        await anyio.to_thread.run_sync(self._set, key, value, ttl)

    async def delete(self, key: str):
        await anyio.to_thread.run_sync(self._delete, key)


class SessionRegistry:
    """Owns every persisted SessionRecord. get/delete of unknown ids are no-ops."""

    def __init__(self, store=None, ttl: float = DEFAULT_TTL_SECONDS):
        self.store = store if store is not None else MemorySessionStore()
        self.ttl = ttl

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{KEY_PREFIX}:{session_id}"

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.store.get(self._key(session_id))
        if raw is None:
            return None
        return SessionRecord.from_dict(json.loads(raw))

    async def set(self, session_id: str, record: SessionRecord):
        """Upsert the record and restart its TTL."""
        await self.store.set(self._key(session_id), json.dumps(record.to_dict()), self.ttl)

    async def delete(self, session_id: str):
        await self.store.delete(self._key(session_id))
        logger.info(f"Deleted session record {session_id}")
