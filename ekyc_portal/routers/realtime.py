import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from .. import crud
from ..portal import PortalContext
from ..schemas import ChangeEvent

log = logging.getLogger(__name__)

realtime_router = APIRouter()


async def stop_pump(task: asyncio.Task):
    """Cancel the event pump and collect its outcome so a send failure gets logged."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        log.exception("WebSocket event pump failed")


async def _resolve_portal_from_websocket(websocket: WebSocket) -> Optional[PortalContext]:
    """Attempt to sign a portal client in from the WS query param 'token' or the access_token cookie."""
    token = websocket.query_params.get("token") or websocket.cookies.get("access_token")
    if not token:
        return None
    portal = PortalContext(websocket.app.state.backend, auto_sync=False)
    await portal.start()
    result = await portal.session.restore_session(token)
    if not result.ok or not portal.session.is_authenticated:
        await portal.close()
        return None
    return portal


@realtime_router.websocket("/ws/kyc")
async def kyc_ws(websocket: WebSocket):
    # Validate user before accepting connection
    portal = await _resolve_portal_from_websocket(websocket)
    if portal is None:
        # politely refuse connection
        await websocket.accept()
        await websocket.send_json({"error": "unauthorized"})
        await websocket.close(code=1008)
        return

    session = portal.session
    user_id = session.user_id
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def forward(event: ChangeEvent):
        # Feed callbacks may run on another thread's loop
        loop.call_soon_threadsafe(queue.put_nowait, event.model_dump(mode="json"))

    # Reviewers watch every submission, applicants only their own
    row_filter = None if session.is_admin else {"user_id": user_id}
    channel = portal.backend.feed.channel(f"ws_kyc_{user_id}_{id(websocket)}", crud.SUBMISSIONS_TABLE,
                                          forward, filter=row_filter)

    async def pump():
        while True:
            payload = await queue.get()
            await websocket.send_json(payload)

    await websocket.accept()
    log.info(f"WebSocket client connected: {user_id}")
    pump_task = None
    try:
        await websocket.send_json({"event": "connected", "user_id": user_id, "role": session.role})
        pump_task = asyncio.create_task(pump())
        while True:
            data = await websocket.receive_text()
            # Simple echo ack for client pings
            await websocket.send_text(f"ack:{data}")
    except WebSocketDisconnect:
        log.debug(f"WebSocket closed by client {user_id}")
    finally:
        if pump_task is not None:
            await stop_pump(pump_task)
        channel.unsubscribe()
        log.info(f"WebSocket client disconnected: {user_id}")
        await portal.close()
