#!/usr/bin/env python3
"""
Turn Sync - drives a remote match: join then wait for start, submit then wait for the turn to advance
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import anyio

from errors import GameNotJoinedError, MatchEndedError, SessionMissingError, TurnSyncTimeoutError
from match_client import is_transition_error
from session_registry import SessionRecord, SessionRegistry

logger = logging.getLogger(__name__)

STATUS_GAMING = "gaming"
STATUS_ENDED = "ended"


@dataclass
class RetryPolicy:
    """
    Delays and classifier for the polling loops.

    max_polls=None keeps the loops open-ended: a match that never starts or
    never advances holds the call until the channel closes.
    """
    poll_interval: float = 1.0
    transition_retry_interval: float = 0.5
    is_transient: Callable[[BaseException], bool] = field(default=is_transition_error)
    max_polls: Optional[int] = None

    def check_attempts(self, attempts: int, what: str):
        if self.max_polls is not None and attempts >= self.max_polls:
            raise TurnSyncTimeoutError(f"gave up {what} after {attempts} attempts")


def to_grid(flat: Sequence[Any], width: int, height: int) -> List[List[Any]]:
    """Row-major flat list -> rows, so grid[y][x] == flat[y * width + x]."""
    return [[flat[y * width + x] for x in range(width)] for y in range(height)]


def flatten(grid: Sequence[Sequence[Any]]) -> List[Any]:
    return [cell for row in grid for cell in row]


def build_snapshot(match: Dict[str, Any], record: SessionRecord) -> Dict[str, Any]:
    """Client-facing view of a match, with the session's own player flagged isMe."""
    board = match.get("field")
    if not board:
        raise ValueError("match has no field information")

    width = board["width"]
    height = board["height"]
    log = match.get("log") or []
    last_turn = log[-1] if log else None

    players = []
    for i, player in enumerate(match.get("players", [])):
        actions = None
        if last_turn is not None and i < len(last_turn.get("players", [])):
            actions = last_turn["players"][i].get("actions")

        agents = []
        for agent_index, agent in enumerate(player.get("agents", [])):
            last_res = None
            if actions:
                entry = next((a for a in actions if a.get("agentId") == agent_index), None)
                last_res = entry.get("res") if entry else None
            agents.append({"x": agent["x"], "y": agent["y"], "lastRes": last_res})

        players.append({
            "agents": agents,
            "point": player.get("point"),
            "isMe": i == record.player_index,
        })

    return {
        "width": width,
        "height": height,
        "points": to_grid(board["points"], width, height),
        "tiles": to_grid(board["tiles"], width, height),
        "nAgent": match.get("nAgent"),
        "nowTurn": match.get("turn"),
        "totalTurn": match.get("totalTurn"),
        "turnSec": (match.get("transitionSec") or 0) + (match.get("operationSec") or 0),
        "players": players,
    }


def to_remote_actions(actions: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"agentId": a["agentIndex"], "type": a["type"], "x": a["x"], "y": a["y"]}
        for a in actions
    ]


class TurnSyncEngine:
    """Keeps a session's record in step with its remote match."""

    def __init__(self, client, registry: SessionRegistry, policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = anyio.sleep):
        self.client = client
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def join(self, session_id: Optional[str], join: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        """
        Join or create a match, wait until it is "gaming", then store the record.

        Args:
            session_id: Session the match is bound to
            join: Coroutine factory performing the remote join call, returning
                {"gameId", "pic", "index"}

        Returns:
            GameSnapshot of the started match
        """
        if not session_id:
            raise SessionMissingError("Missing session ID from client")

        joined = await join()
        game_id = joined["gameId"]
        logger.info(f"Session {session_id} joined game {game_id} as player {joined['index']}")

        match = await self.client.get_match(game_id)
        polls = 1
        while match.get("status") != STATUS_GAMING:
            self.policy.check_attempts(polls, f"waiting for game {game_id} to start")
            await self._sleep(self.policy.poll_interval)
            match = await self.client.get_match(game_id)
            polls += 1

        record = SessionRecord(
            pic=joined["pic"],
            game_id=game_id,
            player_index=joined["index"],
            now_turn=match["turn"],
        )
        await self.registry.set(session_id, record)
        logger.info(f"Game {game_id} started at turn {record.now_turn}")
        return build_snapshot(match, record)

    async def submit(self, session_id: Optional[str], actions: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Send one turn of actions and return the state once the remote turn has advanced.

        The stored turn is only written after the advance is confirmed.
        """
        record = await self._joined_record(session_id)
        payload = to_remote_actions(actions)

        submitted_turn = await self._submit_until_accepted(record, payload)
        baseline = record.now_turn or 0
        if submitted_turn is not None:
            baseline = max(baseline, submitted_turn)
        match = await self._wait_for_turn_after(record.game_id, baseline)

        record.now_turn = match["turn"]
        await self.registry.set(session_id, record)
        logger.info(f"Game {record.game_id} advanced to turn {record.now_turn}")
        return build_snapshot(match, record)

    async def _joined_record(self, session_id: Optional[str]) -> SessionRecord:
        if not session_id:
            raise SessionMissingError("Missing session ID from client")
        record = await self.registry.get(session_id)
        if record is None:
            raise SessionMissingError(f"Session {session_id} not found")
        if not record.joined:
            raise GameNotJoinedError("No game joined yet. Call create-ai-game or join-game first")
        return record

    async def _submit_until_accepted(self, record: SessionRecord, payload: List[Dict[str, Any]]) -> Optional[int]:
        attempts = 0
        while True:
            attempts += 1
            try:
                result = await self.client.submit_action(record.game_id, record.pic, payload)
                return result.get("turn")
            except Exception as exc:
                if not self.policy.is_transient(exc):
                    raise
                logger.debug(f"Game {record.game_id} in transition, retrying submit: {exc}")
            self.policy.check_attempts(attempts, f"submitting actions to game {record.game_id}")
            await self._sleep(self.policy.transition_retry_interval)

    async def _wait_for_turn_after(self, game_id: str, turn: int) -> Dict[str, Any]:
        attempts = 0
        while True:
            attempts += 1
            try:
                match = await self.client.get_match(game_id)
            except Exception as exc:
                if not self.policy.is_transient(exc):
                    raise
                logger.debug(f"Game {game_id} in transition, polling again: {exc}")
            else:
                if match["turn"] > turn:
                    return match
                if match.get("status") == STATUS_ENDED:
                    raise MatchEndedError(f"Game {game_id} has ended")
            self.policy.check_attempts(attempts, f"waiting for game {game_id} to pass turn {turn}")
            await self._sleep(self.policy.poll_interval)
