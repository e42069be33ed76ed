"""
Order status push over WebSockets.

Clients connect to /ws/orders and send
    {"event": "join-order", "order_id": "<id>"}
    {"event": "leave-order", "order_id": "<id>"}
Subscribers of room "order-<id>" receive
    {"event": "orderStatusUpdate", "data": {...}}
Delivery is fire-and-forget: nothing is queued for disconnected clients.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def room_name(order_id: str) -> str:
    return f"order-{order_id}"


class OrderRooms:
    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}

    def join(self, order_id: str, ws: WebSocket):
        self.rooms.setdefault(room_name(order_id), set()).add(ws)

    def leave(self, order_id: str, ws: WebSocket):
        room = room_name(order_id)
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(ws)
        if not members:
            del self.rooms[room]

    def disconnect(self, ws: WebSocket):
        for room in list(self.rooms):
            members = self.rooms[room]
            members.discard(ws)
            if not members:
                del self.rooms[room]

    def members(self, order_id: str) -> Set[WebSocket]:
        return set(self.rooms.get(room_name(order_id), set()))

    async def emit(self, order_id: str, event: str, data: dict):
        message = {"event": event, "data": data}
        for ws in self.members(order_id):
            try:
                await ws.send_json(message)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.debug("Dropping socket from %s: %s", room_name(order_id), e)
                self.disconnect(ws)

    async def order_status_update(self, order_id: str, status: str, note=None, tracking_number=None):
        await self.emit(order_id, "orderStatusUpdate", {
            "order_id": order_id,
            "status": status,
            "note": note,
            "tracking_number": tracking_number,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })


order_rooms = OrderRooms()


async def order_socket(ws: WebSocket):
    await ws.accept()
    try:
        while True:
            message = await ws.receive_json()
            event = message.get("event")
            order_id = message.get("order_id")
            if not order_id or event not in ("join-order", "leave-order"):
                await ws.send_json({"event": "error", "data": {"message": "Unknown event"}})
                continue
            if event == "join-order":
                order_rooms.join(order_id, ws)
            else:
                order_rooms.leave(order_id, ws)
            await ws.send_json({"event": event, "data": {"room": room_name(order_id)}})
    except WebSocketDisconnect:
        pass
    finally:
        order_rooms.disconnect(ws)
