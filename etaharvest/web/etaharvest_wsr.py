from __future__ import annotations

import contextlib
import json

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from .etaharvest_log import broker

router = APIRouter()

HELLO = '{"type":"hello","msg":"progress-stream-ready"}'


def message_kind(raw: str) -> str:
    """``progress`` for progressUpdate pushes, ``log`` for log lines, else ``other``."""
    try:
        payload = json.loads(raw)
    except ValueError:
        return "other"
    if not isinstance(payload, dict):
        return "other"
    if payload.get("action") == "progressUpdate":
        return "progress"
    if payload.get("type") == "log":
        return "log"
    return "other"


@router.websocket("/ws/progress")
async def progress_ws(
    websocket: WebSocket,
    kind: str | None = Query(default=None),  # "progress" or "log"; both when unset
):
    await websocket.accept()
    q = await broker.connect()
    try:
        await websocket.send_text(HELLO)
        while True:
            msg = await q.get()
            if kind and message_kind(msg) != kind:
                continue
            await websocket.send_text(msg)
    except WebSocketDisconnect:
        pass
    finally:
        await broker.disconnect(q)
        with contextlib.suppress(RuntimeError):
            await websocket.close()
