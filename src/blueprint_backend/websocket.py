"""WebSocket sessions bridging the notification bus to connected clients."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Dict

from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from .access import AccessControl
from .notifications import NotificationBus, parse_room
from .tokens import TokenManager

logger = logging.getLogger(__name__)


class WebSocketSubscriber:
    """
    Bus subscriber for one websocket session.

    ``deliver`` is called from conversion worker threads; it only hands the
    message to the session's event loop, where a single sender task writes
    messages to the socket in arrival order.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def deliver(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("WebSocket session closed")
        self._loop.call_soon_threadsafe(self._queue.put_nowait, message)

    async def next_message(self) -> Dict[str, Any]:
        return await self._queue.get()

    def close(self) -> None:
        self.closed = True


def _reply(event: str, **data: Any) -> Dict[str, Any]:
    return {"event": event, "data": data}


async def _pump(websocket: WebSocket, subscriber: WebSocketSubscriber) -> None:
    try:
        while True:
            message = await subscriber.next_message()
            await websocket.send_json(message)
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug(f"WebSocket sender stopped: {exc}")
    finally:
        subscriber.close()


async def serve_websocket(
    websocket: WebSocket,
    bus: NotificationBus,
    tokens: TokenManager,
    access: AccessControl,
) -> None:
    """
    Run one client session.

    The client authenticates with the ``token`` query parameter, then sends
    ``{"action": "joinRoom", "name": "projects/<id>/private"}`` to receive
    that project's ``blueprints.progress`` and ``notification`` messages.
    Other actions: ``leaveRoom`` and ``ping``.
    """
    actor = await run_in_threadpool(tokens.resolve, websocket.query_params.get("token"))
    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscriber = WebSocketSubscriber(asyncio.get_running_loop())
    connection_id = bus.connect(subscriber)
    sender = asyncio.create_task(_pump(websocket, subscriber))
    subscriber.deliver(_reply("connected", connection=connection_id))

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except (json.JSONDecodeError, KeyError):
                # KeyError: a binary frame has no text payload
                subscriber.deliver(_reply("error", message="invalidJson"))
                continue
            if not isinstance(message, dict):
                subscriber.deliver(_reply("error", message="invalidMessage"))
                continue

            action = message.get("action")
            name = message.get("name")

            if action == "joinRoom":
                room = parse_room(name)
                if room is None:
                    subscriber.deliver(_reply("error", message="unknownRoom", name=name))
                    continue
                project, _ = room
                if not await run_in_threadpool(access.is_member, project, actor):
                    subscriber.deliver(_reply("error", message="forbidden", name=name))
                    continue
                bus.subscribe(connection_id, name)
                subscriber.deliver(_reply("joined", name=name))
            elif action == "leaveRoom":
                bus.unsubscribe(connection_id, name)
                subscriber.deliver(_reply("left", name=name))
            elif action == "ping":
                subscriber.deliver(_reply("pong"))
            else:
                subscriber.deliver(_reply("error", message="unknownAction", action=action))
    except (WebSocketDisconnect, ConnectionError):
        logger.debug(f"WebSocket {connection_id} of {actor} disconnected")
    finally:
        subscriber.close()
        bus.disconnect(connection_id)
        sender.cancel()
        with suppress(asyncio.CancelledError):
            await sender
