#!/usr/bin/env python3
"""
Tests for the remote match API client
"""

import json

import httpx
import pytest

from errors import MatchApiError, TransientTransitionError
from match_client import MatchClient, is_transition_error


def client_with(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MatchClient("http://api.test/v1/", http_client=http)


class TestTransitionClassifier:
    def test_typed_error(self):
        assert is_transition_error(TransientTransitionError(400, "anything")) is True

    def test_message_marker(self):
        assert is_transition_error(RuntimeError("Can not send action during the transition step")) is True

    def test_other_errors(self):
        assert is_transition_error(MatchApiError(400, "Invalid action")) is False
        assert is_transition_error(ValueError("boom")) is False


@pytest.mark.anyio
class TestMatchClient:
    async def test_join_ai_match_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"gameId": "g1", "pic": "pic", "index": 0})

        client = client_with(handler)
        result = await client.join_ai_match("alice", "a2")

        assert result == {"gameId": "g1", "pic": "pic", "index": 0}
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "http://api.test/v1/matches/ai/players"
        assert json.loads(request.content) == {
            "guestName": "alice",
            "aiName": "a2",
            "boardName": "A-2",
            "nAgent": 3,
            "totalTurn": 10,
            "transitionSec": 1,
            "operationSec": 15,
        }

    async def test_join_by_game_id(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"gameId": "g1", "pic": "pic", "index": 1})

        await client_with(handler).join_game_id_match("g1", "bob")

        assert seen[0].url.path == "/v1/matches/g1/players"
        assert json.loads(seen[0].content) == {"guestName": "bob"}

    async def test_submit_action_sends_pic(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"turn": 4, "receptionUnixTime": 0})

        actions = [{"agentId": 0, "type": "MOVE", "x": 1, "y": 2}]
        result = await client_with(handler).submit_action("g1", "secret", actions)

        assert result["turn"] == 4
        request = seen[0]
        assert request.method == "PATCH"
        assert request.url.path == "/v1/matches/g1/actions"
        assert request.headers["Authorization"] == "PIC secret"
        assert json.loads(request.content) == {"actions": actions}

    async def test_transition_failure_is_typed(self):
        def handler(request):
            return httpx.Response(400, json={"message": "Can not send action during the transition step", "errorCode": 201})

        with pytest.raises(TransientTransitionError) as excinfo:
            await client_with(handler).submit_action("g1", "secret", [])
        assert excinfo.value.status_code == 400
        assert excinfo.value.error_code == 201

    async def test_other_failure(self):
        def handler(request):
            return httpx.Response(404, json={"message": "Not found game"})

        with pytest.raises(MatchApiError, match="HTTP 404: Not found game") as excinfo:
            await client_with(handler).get_match("missing")
        assert not isinstance(excinfo.value, TransientTransitionError)

    async def test_non_json_failure(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(MatchApiError, match="bad gateway"):
            await client_with(handler).get_match("g1")

    async def test_borrowed_client_is_not_closed(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
        client = MatchClient(http_client=http)
        await client.aclose()
        assert http.is_closed is False
        await http.aclose()
