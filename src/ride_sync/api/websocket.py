import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from ride_sync.notifications import ToastQueue, Variant
from ride_sync.session import ConnectionStatus, RideSyncSession
from ride_sync.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def extract_api_key_and_protocol(websocket: WebSocket) -> tuple[str | None, str | None]:
    """Extract API key and full protocol from Sec-WebSocket-Protocol header.

    Expected format: apikey.<key>
    Returns: (api_key, full_protocol) - both needed for proper handshake
    """
    protocol_header = websocket.headers.get("sec-websocket-protocol")
    if protocol_header:
        protocols = [p.strip() for p in protocol_header.split(",")]
        for protocol in protocols:
            if protocol.startswith("apikey."):
                return protocol.split(".", 1)[1], protocol
    return None, None


class SessionBridge:
    """Notification sink and listener set relaying one session to a websocket.

    Session callbacks run synchronously, so outgoing frames are queued and
    written by ``pump``.
    """

    def __init__(self, toast_limit: int = 1) -> None:
        self.toasts = ToastQueue(limit=toast_limit)
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def attach(self, session: RideSyncSession) -> None:
        session.add_status_listener(self.on_status)
        session.add_refresh_listener(self.on_refresh)
        session.add_update_listener(self.on_update)

    def notify(self, title: str, description: str = "", variant: Variant = "default") -> str:
        toast_id = self.toasts.notify(title, description, variant)
        self._outbox.put_nowait(
            {
                "type": "notification",
                "id": toast_id,
                "title": title,
                "description": description,
                "variant": variant,
            }
        )
        return toast_id

    def on_status(self, status: ConnectionStatus) -> None:
        self._outbox.put_nowait({"type": "status", "status": status.value, "label": status.label})

    def on_refresh(self) -> None:
        self._outbox.put_nowait({"type": "refresh"})

    def on_update(self, last_update: datetime) -> None:
        self._outbox.put_nowait({"type": "update", "last_update": last_update.isoformat()})

    async def pump(self, websocket: WebSocket) -> None:
        while True:
            message = await self._outbox.get()
            if websocket.application_state != WebSocketState.CONNECTED:
                return
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"Stopped relaying to closed websocket: {e}")
                return


@router.websocket("/ws/rides/{ride_id}")
async def ride_updates(websocket: WebSocket, ride_id: str) -> None:
    api_key, subprotocol = extract_api_key_and_protocol(websocket)
    settings = get_settings()
    user_id = websocket.query_params.get("user_id")

    if not api_key or api_key != settings.api.key or not user_id:
        await websocket.close(code=1008)
        return

    await websocket.accept(subprotocol=subprotocol)

    bridge = SessionBridge(toast_limit=settings.realtime.toast_limit)
    session = RideSyncSession(websocket.app.state.channel_provider, bridge)
    bridge.attach(session)
    pump = asyncio.create_task(bridge.pump(websocket))
    session.open(ride_id, user_id)

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Consumer {user_id} disconnected from ride {ride_id}")
    finally:
        session.close()
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
