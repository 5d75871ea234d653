"""TURN credential issuance and signaling endpoints."""
from __future__ import annotations

import json
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.config import settings
from ..schemas.signaling import error_message
from ..schemas.turn import IceServerModel, TurnCredentialsResponse
from ..services import turn as turn_service
from ..services.signaling import SignalingConnection, relay as signaling_relay

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/turn-credentials",
    response_model=TurnCredentialsResponse,
    response_model_exclude_none=True,
)
async def turn_credentials() -> TurnCredentialsResponse:
    """Return short-lived ICE servers for the requesting client."""

    credential = turn_service.issue(
        settings.turn_secret,
        settings.turn_realm,
        settings.turn_ttl_seconds,
        host=settings.turn_host or None,
        stun_urls=settings.stun_urls,
    )
    return TurnCredentialsResponse(
        username=credential.username,
        credential=credential.password,
        ttl=credential.ttl_seconds,
        ice_servers=[
            IceServerModel(urls=server.urls, username=server.username, credential=server.credential)
            for server in credential.ice_servers
        ],
    )


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Pair two sockets per room and relay SDP and ICE payloads between them."""

    connection_id = uuid4().hex
    await websocket.accept()

    signaling_relay.connect(SignalingConnection(connection_id=connection_id, send=websocket.send_json))
    logger.info("Signaling connection %s opened", connection_id)

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text")
            if raw is None:
                logger.warning("Binary frame from %s rejected", connection_id)
                await websocket.send_json(error_message("Frames must be JSON text"))
                continue
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Invalid JSON from %s: %s", connection_id, raw[:100])
                await websocket.send_json(error_message("Invalid JSON payload"))
                continue
            await signaling_relay.handle(connection_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        await signaling_relay.disconnect(connection_id)
        logger.info("Signaling connection %s closed", connection_id)
