"""WebSocket transport of the real-time notifier."""

import asyncio
import logging
from typing import Literal

import pydantic
from aiohttp import WSMsgType, web

from testflow.errors import NotifierAuthError
from testflow.models.base import Model
from testflow.notifier.notifier import RealtimeNotifier
from testflow.notifier.registry import Subscriber

log = logging.getLogger(__name__)

NOTIFIER_KEY = web.AppKey("notifier", RealtimeNotifier)


class ClientMessage(Model):
    """Message sent by a subscriber over the socket."""

    event: Literal["join_project", "leave_project"]
    project_id: str


def handshake_token(request: web.Request) -> str | None:
    """Extract the bearer credential presented during the handshake."""
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header.removeprefix("Bearer ").strip()
    return request.query.get("token")


def handle_client_message(
    notifier: RealtimeNotifier, subscriber: Subscriber, raw: str
) -> None:
    """Apply a join or leave request sent by a subscriber."""
    try:
        message = ClientMessage.model_validate_json(raw)
    except pydantic.ValidationError as e:
        log.warning(
            "Ignoring invalid message from %s: %s",
            subscriber.identity.user_id,
            e.errors(include_url=False),
        )
        return

    match message.event:
        case "join_project":
            notifier.join_project(subscriber, message.project_id)
        case "leave_project":
            notifier.leave_project(subscriber, message.project_id)


async def drain_outbound(subscriber: Subscriber, ws: web.WebSocketResponse) -> None:
    """Send queued events to the socket until cancelled."""
    while True:
        message = await subscriber.outbound.get()
        await ws.send_json(message)


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """Authenticate, upgrade and serve one subscriber connection."""
    notifier = request.app[NOTIFIER_KEY]
    try:
        subscriber = notifier.connect(handshake_token(request))
    except NotifierAuthError as e:
        raise web.HTTPUnauthorized(text=str(e)) from e

    ws = web.WebSocketResponse()
    sender: asyncio.Task[None] | None = None
    try:
        await ws.prepare(request)
        sender = asyncio.create_task(drain_outbound(subscriber, ws))
        async for message in ws:
            if message.type == WSMsgType.TEXT:
                handle_client_message(notifier, subscriber, message.data)
            elif message.type == WSMsgType.ERROR:
                log.warning(
                    "Connection error for %s: %s",
                    subscriber.identity.user_id,
                    ws.exception(),
                )
    finally:
        if sender is not None:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
        notifier.disconnect(subscriber)

    return ws


def create_app(notifier: RealtimeNotifier) -> web.Application:
    """Build the web application serving the ``/ws`` endpoint."""
    app = web.Application()
    app[NOTIFIER_KEY] = notifier
    app.router.add_get("/ws", websocket_handler)
    return app
