# api/routers/realtime.py

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from skill_system.models import generate_id

from .. import crud, security
from ..database import get_engine
from ..realtime import get_hub
from ..storage import TreeStore
from .trees import graph_out

logger = logging.getLogger(__name__)

RELAYED_EVENTS = ("cursor-move", "node-position", "action")
CLOSE_UNAUTHORIZED = 4401
CLOSE_NOT_FOUND = 4404

router = APIRouter(tags=["realtime"])


def _open_tree(tree_id: str, token: Optional[str]):
    """Returns (close code, snapshot). The snapshot is None when the gate refuses."""
    with get_engine().connect() as conn:
        tree = crud.get_tree(conn, tree_id)
        if tree is None:
            return CLOSE_NOT_FOUND, None
        if tree.password_hash and not security.token_grants_tree(token, tree_id):
            return CLOSE_UNAUTHORIZED, None
        return None, graph_out(TreeStore(conn), tree_id)


@router.websocket("/trees/{tree_id}/ws")
async def tree_websocket(websocket: WebSocket, tree_id: str, token: Optional[str] = None, client_id: Optional[str] = None):
    """
    Realtime channel of one tree.

    Protocol:
    1. Client connects (with `token` for protected trees)
    2. Server sends a snapshot of the graph
    3. Server forwards change messages and other clients' broadcasts
    4. Client sends {"type": "broadcast", "event", "payload"} to reach the others
    """
    close_code, snapshot = await run_in_threadpool(_open_tree, tree_id, token)
    if close_code is not None:
        await websocket.close(code=close_code)
        return

    client_id = client_id or generate_id()
    hub = get_hub()
    await websocket.accept()
    subscriber = hub.subscribe(tree_id, client_id)

    async def forward():
        while True:
            message = await subscriber.get()
            await websocket.send_json(message)

    async def relay():
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
                continue
            if data.get("type") != "broadcast" or data.get("event") not in RELAYED_EVENTS:
                logger.debug("Ignored message from %s: %r", client_id, data.get("type"))
                continue
            payload = dict(data.get("payload") or {})
            payload["id"] = client_id
            hub.broadcast(tree_id, data["event"], payload, sender=client_id)

    try:
        await websocket.send_json({"type": "snapshot", "client_id": client_id, **snapshot})
        tasks = [asyncio.create_task(forward()), asyncio.create_task(relay())]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                raise error
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(subscriber)
        hub.broadcast(tree_id, "leave", {"id": client_id}, sender=client_id)
        logger.debug("Client %s left tree %s", client_id, tree_id)
