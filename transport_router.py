#!/usr/bin/env python3
"""
Transport Router - maps each inbound /mcp request onto exactly one session channel

A request is served by, in order of preference:
    1. the live channel already bound to its session id in this process
    2. a new channel rehydrated under the same id from the persisted record
    3. a brand-new session, if the request is an initialize request
and rejected with a JSON-RPC error otherwise.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional

import anyio
from mcp import types
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse

from errors import ProtocolSessionError
from session_registry import SessionRecord, SessionRegistry

logger = logging.getLogger(__name__)


def is_initialize_request(payload: Any) -> bool:
    if not isinstance(payload, dict) or payload.get("method") != "initialize":
        return False
    try:
        types.InitializeRequest.model_validate(payload)
    except ValidationError:
        return False
    return True


class McpChannel:
    """One streamable HTTP transport with the MCP server running on top of it."""

    def __init__(self, server, session_id: str, rehydrated: bool = False, json_response: bool = False):
        self.session_id = session_id
        self.rehydrated = rehydrated
        self.transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )
        self._server = server
        self._close_hooks = []

    @property
    def terminated(self) -> bool:
        return self.transport.is_terminated

    def on_close(self, hook: Callable[["McpChannel"], Awaitable[None]]):
        self._close_hooks.append(hook)

    async def terminate(self):
        await self.transport.terminate()

    async def run(self, *, task_status=anyio.TASK_STATUS_IGNORED):
        async with self.transport.connect() as (read_stream, write_stream):
            task_status.started()
            try:
                # The client initialized against a previous process; skip the handshake
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                    stateless=self.rehydrated,
                )
            except Exception as e:
                logger.error(f"Channel {self.session_id} crashed: {e}", exc_info=True)
            finally:
                for hook in self._close_hooks:
                    await hook(self)

    async def handle_request(self, scope, receive, send):
        await self.transport.handle_request(scope, receive, send)


class ChannelBindings:
    """
    In-process session id -> channel table.

    Only the router writes to it. Lookups and writes never suspend, so a
    check-then-register done without an await in between cannot race.
    """

    def __init__(self):
        self._channels: Dict[str, Any] = {}

    def get(self, session_id: str):
        return self._channels.get(session_id)

    def register(self, session_id: str, channel):
        self._channels[session_id] = channel

    def discard(self, session_id: str, channel) -> bool:
        """Drop the binding only if it still points at this channel."""
        if self._channels.get(session_id) is channel:
            del self._channels[session_id]
            return True
        return False

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)


class TransportRouter:
    """ASGI app for the MCP endpoint. Channels live in the task group opened by run()."""

    def __init__(self, registry: SessionRegistry,
                 channel_factory: Callable[[str, bool], Any],
                 id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self.registry = registry
        self.bindings = ChannelBindings()
        self._channel_factory = channel_factory
        self._id_factory = id_factory
        self._task_group = None

    @asynccontextmanager
    async def run(self):
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield self
            finally:
                tg.cancel_scope.cancel()
                self._task_group = None

    async def resolve(self, session_id: Optional[str], read_body: Callable[[], Awaitable[Any]]):
        """
        Pick the channel that serves this request.

        Args:
            session_id: Value of the mcp-session-id header, if any
            read_body: Returns the decoded JSON body; only called when there is no session id

        Raises:
            ProtocolSessionError: no channel applies
        """
        if session_id:
            channel = self.bindings.get(session_id)
            if channel is not None:
                return channel

            record = await self.registry.get(session_id)
            if record is None:
                logger.info(f"Rejecting unknown session {session_id}")
                raise ProtocolSessionError()

            # Another request may have rehydrated this id while we awaited the store
            channel = self.bindings.get(session_id)
            if channel is not None:
                return channel
            return await self._rehydrate(session_id)

        if is_initialize_request(await read_body()):
            return await self._open_session()

        raise ProtocolSessionError()

    async def _rehydrate(self, session_id: str):
        channel = self._channel_factory(session_id, True)
        self.bindings.register(session_id, channel)
        channel.on_close(self._on_channel_close)
        await self._start(channel)
        logger.info(f"Rehydrated session {session_id}")
        return channel

    async def _open_session(self):
        """Allocate an id, persist an empty record, then bind the channel."""
        session_id = self._id_factory()
        channel = self._channel_factory(session_id, False)
        channel.on_close(self._on_channel_close)
        await self.registry.set(session_id, SessionRecord())
        self.bindings.register(session_id, channel)
        await self._start(channel)
        logger.info(f"Created session {session_id}")
        return channel

    async def _start(self, channel):
        if self._task_group is None:
            raise RuntimeError("TransportRouter.run() must be entered before serving requests")
        await self._task_group.start(channel.run)

    async def _on_channel_close(self, channel):
        self.bindings.discard(channel.session_id, channel)
        # Shutdown also ends channels; only a client-side termination forgets the session
        if channel.terminated:
            await self.registry.delete(channel.session_id)
        logger.info(f"Closed channel for session {channel.session_id}")

    async def _abandon_session(self, channel):
        """Undo a mint whose initialize request the channel refused."""
        self.bindings.discard(channel.session_id, channel)
        await self.registry.delete(channel.session_id)
        await channel.terminate()
        logger.info(f"Discarded session {channel.session_id}: initialize was refused")

    async def __call__(self, scope, receive, send):
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        logger.info(f"{request.method} {request.url.path} Session ID: {session_id}")

        body_read = False

        async def read_body():
            nonlocal body_read
            body = await request.body()
            body_read = True
            try:
                return json.loads(body)
            except ValueError:
                return None

        try:
            channel = await self.resolve(session_id, read_body)
        except ProtocolSessionError as e:
            response = JSONResponse(e.to_jsonrpc(), status_code=400)
            await response(scope, receive, send)
            return

        if body_read:
            receive = _replay_body(await request.body(), receive)

        if session_id:
            await channel.handle_request(scope, receive, send)
            return

        accepted = False

        async def watch_status(message):
            nonlocal accepted
            if message["type"] == "http.response.start":
                accepted = 200 <= message["status"] < 300
            await send(message)

        try:
            await channel.handle_request(scope, receive, watch_status)
        finally:
            if not accepted:
                with anyio.CancelScope(shield=True):
                    await self._abandon_session(channel)


def _replay_body(body: bytes, receive):
    """Hand an already-consumed request body to the next reader once, then defer to receive."""
    sent = False

    async def replay():
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay
