#!/usr/bin/env python3
"""
Shared fixtures: scripted match API, recording registry, fake channels
"""

import anyio
import pytest
from starlette.requests import Request
from starlette.responses import JSONResponse

from session_registry import MemorySessionStore, SessionRegistry


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_match(status="gaming", turn=0, width=3, height=2, log=None):
    """A remote match payload with two players of two agents each."""
    size = width * height
    return {
        "id": "game-1",
        "status": status,
        "turn": turn,
        "totalTurn": 10,
        "nAgent": 2,
        "transitionSec": 1,
        "operationSec": 15,
        "field": {
            "width": width,
            "height": height,
            "points": list(range(size)),
            "tiles": [{"type": 0, "player": None} for _ in range(size)],
        },
        "players": [
            {"id": "p0", "agents": [{"x": 0, "y": 0}, {"x": 1, "y": 0}], "point": {"areaPoint": 0, "wallPoint": 1}},
            {"id": "p1", "agents": [{"x": 2, "y": 1}, {"x": -1, "y": -1}], "point": {"areaPoint": 2, "wallPoint": 3}},
        ],
        "log": log if log is not None else [],
    }


class FakeMatchClient:
    """
    Replays scripted answers. Each script entry is either a value to return or
    an exception to raise; the last entry repeats once the script runs out.
    """

    def __init__(self, matches=None, submits=None, joined=None):
        self.matches = list(matches or [])
        self.submits = list(submits or [{"turn": 0}])
        self.joined = joined or {"gameId": "game-1", "pic": "pic-123", "index": 1}
        self.calls = []

    @staticmethod
    def _next(script):
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def join_ai_match(self, guest_name, ai_name, **kwargs):
        self.calls.append(("join_ai_match", guest_name, ai_name))
        return self.joined

    async def join_game_id_match(self, game_id, guest_name):
        self.calls.append(("join_game_id_match", game_id, guest_name))
        return self.joined

    async def get_match(self, game_id):
        self.calls.append(("get_match", game_id))
        return self._next(self.matches)

    async def submit_action(self, game_id, pic, actions):
        self.calls.append(("submit_action", game_id, pic, actions))
        return self._next(self.submits)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


class RecordingRegistry(SessionRegistry):
    """SessionRegistry that remembers every write."""

    def __init__(self, store=None, ttl=60):
        super().__init__(store or MemorySessionStore(), ttl=ttl)
        self.writes = []

    async def set(self, session_id, record):
        self.writes.append((session_id, record.to_dict()))
        await super().set(session_id, record)


class FakeChannel:
    """Stands in for McpChannel: runs until terminated, echoes requests."""

    def __init__(self, session_id, rehydrated, status=200):
        self.session_id = session_id
        self.rehydrated = rehydrated
        self.status = status
        self.terminated = False
        self.requests = []
        self._hooks = []
        self._stop = anyio.Event()
        self.closed = anyio.Event()

    def on_close(self, hook):
        self._hooks.append(hook)

    async def run(self, *, task_status=anyio.TASK_STATUS_IGNORED):
        task_status.started()
        try:
            await self._stop.wait()
        finally:
            for hook in self._hooks:
                await hook(self)
            self.closed.set()

    async def terminate(self):
        self.terminated = True
        self._stop.set()
        await self.closed.wait()

    async def handle_request(self, scope, receive, send):
        request = Request(scope, receive)
        body = await request.body()
        self.requests.append(body)
        response = JSONResponse({"session": self.session_id}, status_code=self.status, headers={"mcp-session-id": self.session_id})
        await response(scope, receive, send)


class ChannelFactory:
    def __init__(self, status=200):
        self.status = status
        self.created = []

    def __call__(self, session_id, rehydrated):
        channel = FakeChannel(session_id, rehydrated, status=self.status)
        self.created.append(channel)
        return channel


@pytest.fixture
def registry():
    return RecordingRegistry()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay):
        sleeps.append(delay)
    return _sleep
