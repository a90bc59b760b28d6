"""Websocket endpoint for the signaling relay."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from api.dependencies import get_relay
from relay.server import RelayServer

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket, relay: RelayServer = Depends(get_relay)) -> None:
    await websocket.accept()
    try:
        while True:
            message = await websocket.receive_text()
            await relay.handle(websocket, message)
    except WebSocketDisconnect:
        LOGGER.debug("Websocket closed by peer")
    finally:
        await relay.disconnect(websocket)
