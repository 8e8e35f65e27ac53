"""Realtime WebSocket API endpoints.

Provides:
- WebSocket endpoint for chat events and presence
- REST endpoints for connection stats and the online user list
"""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from clawchat.api.deps import CurrentIdentity, Hub
from clawchat.core.config import settings
from clawchat.core.exceptions import AuthenticationError, InvalidCommandError
from clawchat.core.logging import get_logger
from clawchat.realtime.hub import RealtimeHub, get_realtime_hub
from clawchat.realtime.identity import Credential
from clawchat.realtime.session import CLOSE_AUTH_FAILED, ConnectionSession

logger = get_logger(__name__)

router = APIRouter()

# Policy violation: sent when the endpoint is switched off
CLOSE_DISABLED = 1008


# =============================================================================
# Response Schemas
# =============================================================================


class ConnectionStats(BaseModel):
    """WebSocket connection statistics."""

    total_connections: int = Field(..., description="Total open WebSocket connections")
    total_users: int = Field(..., description="Unique users with an open connection")
    total_rooms: int = Field(..., description="Rooms with at least one member")
    rooms: dict[str, int] = Field(default_factory=dict, description="Room -> member count mapping")


class OnlineUsersResponse(BaseModel):
    """Users with at least one open connection."""

    user_ids: list[str] = Field(default_factory=list)
    count: int


# =============================================================================
# WebSocket Endpoint
# =============================================================================


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, hub: Hub):
    """
    WebSocket endpoint for chat events and presence.

    Connect with one of:
    - ``ws://host/api/v1/realtime/ws?token=<session_token>``
    - ``Authorization: Bearer <session_token>`` on the upgrade request
    - ``ws://host/api/v1/realtime/ws?api_key=<bot_api_key>`` (bot accounts)

    A rejected credential closes the socket with code 4001 and the error code
    (``NO_CREDENTIAL``, ``INVALID_TOKEN``, ``INVALID_API_KEY``,
    ``AUTH_BACKEND_ERROR``) as the reason. Expired tokens are ``INVALID_TOKEN``.

    ## Client -> Server Messages

    ```json
    {"type": "join_channel", "payload": {"channelId": "uuid"}}
    {"type": "leave_channel", "payload": {"channelId": "uuid"}}
    {"type": "join_thread", "payload": {"threadId": "uuid"}}
    {"type": "leave_thread", "payload": {"threadId": "uuid"}}
    {"type": "typing", "payload": {"channelId": "uuid", "threadId": "optional"}}
    {"type": "ping", "request_id": "optional"}
    ```

    ## Server -> Client Messages

    ``{"type": <event>, "payload": {...}, "timestamp": "..."}`` where event is
    one of online_users, user_online, user_offline, user_typing, new_message,
    thread_reply, message_edited, message_deleted, reaction_added,
    reaction_removed, mention, bot_settings_updated, pong, error.
    """
    if not settings.enable_websockets:
        await websocket.close(code=CLOSE_DISABLED, reason="WEBSOCKETS_DISABLED")
        return

    session = ConnectionSession(websocket, hub)
    credential = Credential.from_transport(websocket.headers, websocket.query_params)

    try:
        await session.authenticate(credential)
    except AuthenticationError as e:
        await websocket.close(code=CLOSE_AUTH_FAILED, reason=e.code)
        return

    await websocket.accept()
    await session.open()

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await session.send_error(InvalidCommandError("Invalid JSON message"))
                continue

            await session.handle_command(data)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception(f"WebSocket error on {session.connection_id}: {e}")
    finally:
        await session.close("client disconnected")


# =============================================================================
# REST Endpoints
# =============================================================================


@router.get("/stats", response_model=ConnectionStats)
async def get_connection_stats(identity: CurrentIdentity, hub: Hub) -> ConnectionStats:
    """Get WebSocket connection statistics for this process."""
    return ConnectionStats(**hub.router.get_stats())


@router.get("/online", response_model=OnlineUsersResponse)
async def get_online_users(identity: CurrentIdentity, hub: Hub) -> OnlineUsersResponse:
    """List the IDs of users with at least one open connection."""
    user_ids = sorted(hub.presence.list_online_user_ids())
    return OnlineUsersResponse(user_ids=user_ids, count=len(user_ids))


# =============================================================================
# Background Tasks
# =============================================================================


async def cleanup_stale_connections_task(hub: Optional[RealtimeHub] = None) -> None:
    """Background task that closes connections which stopped pinging."""
    hub = hub or get_realtime_hub()

    while True:
        await asyncio.sleep(settings.ws_cleanup_interval_seconds)
        try:
            await hub.reap_stale_sessions()
        except Exception as e:
            logger.error(f"Error cleaning up connections: {e}")


def start_cleanup_task(hub: Optional[RealtimeHub] = None) -> asyncio.Task:
    """Start the background cleanup task."""
    return asyncio.create_task(cleanup_stale_connections_task(hub), name="ws-cleanup")
