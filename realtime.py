# realtime.py
"""
Per-user real-time channels over WebSockets.

Clients connect to ``/ws?token=<jwt>`` and are joined to the channel named
after their user id. Delivery is best-effort and at-most-once: a recipient
that is not connected simply misses the event.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from database import serialize
from errors import ServiceError
from security import load_user_from_token

logger = logging.getLogger(__name__)

router = APIRouter()


class Broadcaster:
    def __init__(self):
        self._channels: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        with self._lock:
            self._channels[user_id].add(websocket)
        logger.info("Socket joined channel %s", user_id)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        with self._lock:
            sockets = self._channels.get(user_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self._channels[user_id]
        logger.info("Socket left channel %s", user_id)

    def publish(self, user_id: Any, event: str, data: Any) -> None:
        with self._lock:
            sockets = list(self._channels.get(str(user_id), ()))
        if not sockets or self._loop is None:
            return
        frame = {"event": event, "data": serialize(data)}
        for ws in sockets:
            future = asyncio.run_coroutine_threadsafe(ws.send_json(frame), self._loop)
            future.add_done_callback(self._log_failure)

    def publish_many(self, user_ids: Iterable[Any], event: str, data: Any) -> None:
        for user_id in {str(u) for u in user_ids if u}:
            self.publish(user_id, event, data)

    @staticmethod
    def _log_failure(future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("Realtime delivery failed: %s", exc)


@router.websocket("/ws")
async def socket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    broadcaster: Broadcaster = websocket.app.state.broadcaster
    try:
        user = load_user_from_token(websocket.app.state.db, token)
    except ServiceError:
        await websocket.close(code=4401)
        return

    user_id = str(user["_id"])
    await broadcaster.connect(user_id, websocket)
    try:
        while True:
            frame = await websocket.receive_json()
            if not isinstance(frame, dict) or frame.get("event") != "typing":
                continue
            data = frame.get("data") or {}
            receiver_id = data.get("receiverId")
            if not receiver_id:
                continue
            # typing relay is pass-through only; nothing is stored
            broadcaster.publish(receiver_id, "user_typing", {"userId": user_id, "isTyping": bool(data.get("isTyping"))})
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(user_id, websocket)
