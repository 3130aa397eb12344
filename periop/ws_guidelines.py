"""Websocket room that pushes guideline updates to connected editors."""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Set

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

from periop.metrics import GUIDELINE_BROADCASTS_TOTAL


logger = structlog.get_logger(__name__)

GUIDELINES_ROOM = "guidelines"
GUIDELINE_UPDATED_EVENT = "guideline:updated"


def _join_target(message: str) -> Optional[str]:
    """Return the room a client asked to join, if the message is a join."""

    text = message.strip()
    if text == "join-guidelines":
        return GUIDELINES_ROOM
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(payload, dict) and payload.get("event") == "join-guidelines":
        return GUIDELINES_ROOM
    return None


class GuidelineWebSocketManager:
    """Track websocket clients per room and fan out guideline updates."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def handle(self, websocket: WebSocket) -> None:
        """Accept *websocket* and serve room joins until it disconnects."""

        await websocket.accept()
        await websocket.send_json({"event": "connected"})
        try:
            while True:
                message = await websocket.receive_text()
                room = _join_target(message)
                if room is None:
                    continue
                async with self._lock:
                    self._rooms[room].add(websocket)
                await websocket.send_json({"event": "joined", "room": room})
        except WebSocketDisconnect:
            pass
        except Exception as exc:  # pragma: no cover - transport errors
            logger.debug("guidelines_ws_receive_error", error=str(exc))
        finally:
            await self._discard(websocket)

    async def broadcast(self, payload: Mapping[str, Any], room: str = GUIDELINES_ROOM) -> int:
        """Send a ``guideline:updated`` event to every member of *room*."""

        GUIDELINE_BROADCASTS_TOTAL.labels(str(payload.get("action", "unknown"))).inc()
        message = {"event": GUIDELINE_UPDATED_EVENT, "payload": dict(payload)}
        async with self._lock:
            clients: List[WebSocket] = list(self._rooms.get(room, set()))
        if not clients:
            return 0
        dead: List[WebSocket] = []
        delivered = 0
        for ws in clients:
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception:  # pragma: no cover - drop on failure
                dead.append(ws)
        for ws in dead:
            await self._discard(ws)
        return delivered

    def member_count(self, room: str = GUIDELINES_ROOM) -> int:
        return len(self._rooms.get(room, ()))

    async def _discard(self, websocket: WebSocket) -> None:
        async with self._lock:
            for room in list(self._rooms):
                members = self._rooms[room]
                members.discard(websocket)
                if not members:
                    self._rooms.pop(room, None)


__all__ = ["GUIDELINES_ROOM", "GUIDELINE_UPDATED_EVENT", "GuidelineWebSocketManager"]
