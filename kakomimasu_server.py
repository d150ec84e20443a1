#!/usr/bin/env python3
"""
Kakomimasu MCP Server - FastMCP tools for playing Kakomimasu matches over streamable HTTP
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

import uvicorn
from dotenv import load_dotenv
from fastmcp import FastMCP
from mcp.server.lowlevel.server import request_ctx
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from pydantic import BaseModel, Field
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from errors import BridgeError
from match_client import DEFAULT_BASE_URL, MatchClient
from session_registry import DEFAULT_TTL_SECONDS, MemorySessionStore, SessionRegistry, SqliteSessionStore
from transport_router import McpChannel, TransportRouter
from turn_sync import RetryPolicy, TurnSyncEngine

# Load environment variables
load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

AI_LIST = ["a1", "a2", "a3", "a4", "none"]
AiName = Literal["a1", "a2", "a3", "a4", "none"]


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


def build_registry() -> SessionRegistry:
    db_path = os.getenv("SESSION_DB_PATH")
    store = SqliteSessionStore(db_path) if db_path else MemorySessionStore()
    ttl = float(os.getenv("SESSION_TTL_SECONDS", str(DEFAULT_TTL_SECONDS)))
    return SessionRegistry(store, ttl=ttl)


def build_policy() -> RetryPolicy:
    return RetryPolicy(
        poll_interval=float(os.getenv("POLL_INTERVAL_SECONDS", "1.0")),
        transition_retry_interval=float(os.getenv("TRANSITION_RETRY_SECONDS", "0.5")),
        max_polls=_optional_int("MAX_POLLS"),
    )


# Global collaborators
registry = build_registry()
match_client = MatchClient(os.getenv("KAKOMIMASU_API_URL", DEFAULT_BASE_URL))
engine = TurnSyncEngine(match_client, registry, build_policy())

# Create FastMCP instance
mcp = FastMCP("Kakomimasu MCP")

router = TransportRouter(
    registry,
    lambda session_id, rehydrated: McpChannel(mcp._mcp_server, session_id, rehydrated=rehydrated),
)


def get_session_id() -> Optional[str]:
    """Get the session ID the client sent with the current tool call."""
    try:
        ctx = request_ctx.get()
    except LookupError:
        return None
    request = getattr(ctx, "request", None)
    if request is None:
        return None
    return request.headers.get(MCP_SESSION_ID_HEADER)


class AgentAction(BaseModel):
    agentIndex: int = Field(description="Index of the agent to move, 0 to nAgent-1")
    type: Literal["PUT", "MOVE", "REMOVE", "NONE"] = Field(
        description=(
            "PUT places the agent on (x, y) (not on a wall). "
            "MOVE moves to an adjacent cell, diagonals included (not onto an opponent wall). "
            "REMOVE removes the wall on (x, y), either side's. "
            "NONE does nothing and ignores x, y."
        )
    )
    x: int = Field(description="Target cell X coordinate")
    y: int = Field(description="Target cell Y coordinate")


@mcp.tool(name="get-ai-list", annotations={"readOnlyHint": True, "openWorldHint": False})
def get_ai_list() -> Dict[str, Any]:
    """List the AI opponents available for create-ai-game."""
    return {"aiNameList": AI_LIST}


@mcp.tool(name="create-ai-game", annotations={"openWorldHint": False})
async def create_ai_game(name: str, ai_name: AiName) -> Dict[str, Any]:
    """
    Start a match against an AI and wait until it begins.

    Args:
        name: Your player name
        ai_name: Opponent AI, one of the names returned by get-ai-list

    Returns:
        Game state: width, height, points[y][x], tiles[y][x] ({player, type}),
        nAgent, nowTurn, totalTurn, turnSec and players (agents with lastRes,
        point, isMe).
    """
    try:
        return await engine.join(get_session_id(), lambda: match_client.join_ai_match(name, ai_name))
    except BridgeError:
        raise
    except Exception as e:
        logger.error(f"Error creating AI game: {e}", exc_info=True)
        raise


@mcp.tool(name="join-game", annotations={"openWorldHint": False})
async def join_game(name: str, game_id: UUID) -> Dict[str, Any]:
    """
    Join an existing match by its game ID and wait until it begins.

    Args:
        name: Your player name
        game_id: UUID of the match to join

    Returns:
        Game state, same shape as create-ai-game
    """
    try:
        return await engine.join(get_session_id(), lambda: match_client.join_game_id_match(str(game_id), name))
    except BridgeError:
        raise
    except Exception as e:
        logger.error(f"Error joining game {game_id}: {e}", exc_info=True)
        raise


@mcp.tool(name="action-and-nextturn", annotations={"openWorldHint": False})
async def action_and_nextturn(actions: List[AgentAction]) -> Dict[str, Any]:
    """
    Send the actions for the next turn and wait for the game to move on.

    Give at most one action per agent. Each agent's lastRes in the result is:
    0 success, 1 conflict (two agents targeted the same cell), 2 invalid
    (e.g. moving onto an opponent wall; REMOVE it first), 3 several actions for
    one agent, 4 unknown agent, 5 unknown action.

    Args:
        actions: Actions for this turn

    Returns:
        Game state after the turn advanced
    """
    try:
        return await engine.submit(get_session_id(), [action.model_dump() for action in actions])
    except BridgeError:
        raise
    except Exception as e:
        logger.error(f"Error submitting actions: {e}", exc_info=True)
        raise


# =============================================================================
# DOCUMENTATION RESOURCES
# =============================================================================

@mcp.resource("doc://rules", name="Game Rules", description="How Kakomimasu is played and how to drive it with these tools", mime_type="text/markdown")
def rules_guide() -> str:
    """Rules and tool flow for Kakomimasu."""
    return """# Kakomimasu

Two players each control `nAgent` agents on a `width` x `height` board of
scored cells. Every turn both players send one action per agent at the same
time; a turn lasts `turnSec` seconds.

## Tiles

`tiles[y][x]` is `{player, type}`. `player` is null for an empty cell.
Otherwise the cell belongs to that player index and `type` is 0 for
territory and 1 for a wall. Enclosing cells with walls turns them into
territory.

## Score

Each player has `areaPoint` (territory) and `wallPoint` (walls).

## Flow

1. `get-ai-list` to pick an opponent
2. `create-ai-game` (or `join-game` with a game ID)
3. `action-and-nextturn` once per turn until `nowTurn` reaches `totalTurn`

Your player is the one with `isMe: true`.
"""


async def homepage(request):
    return PlainTextResponse("Hello, MCP Server!")


@asynccontextmanager
async def lifespan(app):
    async with router.run():
        try:
            yield
        finally:
            await match_client.aclose()


app = Starlette(
    routes=[
        Route("/", homepage),
        Route("/mcp", endpoint=router, methods=["GET", "POST", "DELETE"]),
    ],
    lifespan=lifespan,
)


if __name__ == "__main__":
    host = os.getenv("MCP_HOST", "127.0.0.1")
    port = int(os.getenv("MCP_PORT", "8201"))
    logger.info(f"Starting Kakomimasu MCP server on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
