"""
WebSocket endpoint: one socket per client, JSON frames {"event", "data"}.
"""
import asyncio
import json
import logging
from contextlib import suppress

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .socket_handlers import SocketContext, dispatch, error_reply

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class WebSocketConnection:
    """
    Outbound side of a socket. `deliver` may be called from any thread (the
    broadcaster runs inside sync endpoints); a writer task on the socket's
    loop drains the queue in order.
    """

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        self.websocket = websocket
        self.loop = loop
        self.queue: asyncio.Queue[dict] = asyncio.Queue()
        self.closed = False

    def deliver(self, message: dict) -> None:
        if self.closed:
            return
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)

    async def writer(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Send failed, closing socket: {e}")
                await self.close()
                return

    async def close(self) -> None:
        self.closed = True
        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug(f"Socket already gone: {e}")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    services = websocket.app.state.services
    client_host = websocket.client.host if websocket.client else "unknown"

    try:
        await websocket.accept()
    except Exception as e:
        logger.error(f"Failed to accept WebSocket connection from {client_host}: {e}")
        return

    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    client = services.registry.register(connection)
    ctx = SocketContext(connection_id=client.connection_id, services=services)
    writer = asyncio.create_task(connection.writer())

    try:
        # The writer closes the connection when a send fails
        while not connection.closed:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                replies = [error_reply("validation", "Frames must be valid JSON")]
            else:
                replies = await dispatch(ctx, frame)
            for event_name, data in replies:
                services.broadcaster.send_to(client.connection_id, event_name, data)
    except WebSocketDisconnect:
        pass
    finally:
        services.registry.unregister(client.connection_id)
        writer.cancel()
        with suppress(asyncio.CancelledError):
            await writer
