"""In-memory WebRTC signaling relay for two-party rooms."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable

from ..schemas.signaling import RELAY_TYPES, SignalType, error_message, make_message
from .rooms import JoinResult, JoinStatus, LeaveResult, RoomRegistry

SendCallable = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


class SignalingRelay:
    """Pair connections into rooms and forward negotiation messages between them."""

    def __init__(self, registry: RoomRegistry | None = None) -> None:
        self.registry = registry if registry is not None else RoomRegistry()
        self._connections: Dict[str, SignalingConnection] = {}

    def connect(self, connection: SignalingConnection) -> None:
        self._connections[connection.connection_id] = connection

    async def disconnect(self, connection_id: str) -> None:
        """Forget a transport, leaving whatever room it occupied."""

        await self.leave(connection_id)
        self._connections.pop(connection_id, None)

    async def handle(self, connection_id: str, message: Any) -> None:
        """Dispatch one decoded frame from ``connection_id``."""

        if not isinstance(message, dict):
            await self._send(connection_id, error_message("Frame must be a JSON object"))
            return

        raw_type = message.get("type")
        try:
            kind = SignalType(raw_type)
        except ValueError:
            await self._send(connection_id, error_message(f"Unknown message type: {raw_type}"))
            return

        room_id = message.get("roomId")
        if kind is SignalType.JOIN:
            if not isinstance(room_id, str) or not room_id:
                await self._send(connection_id, error_message("roomId missing"))
                return
            await self.join(connection_id, room_id)
        elif kind in RELAY_TYPES:
            if not isinstance(room_id, str):
                await self._send(connection_id, error_message("roomId missing"))
                return
            await self.relay(kind, connection_id, room_id, message)
        else:
            await self._send(connection_id, error_message(f"Unsupported client message: {kind.value}"))

    async def join(self, connection_id: str, room_id: str) -> JoinResult:
        """Admit a connection and emit ``ready`` to the first occupant once the room is paired."""

        result = await self.registry.join(connection_id, room_id)
        if result.previous is not None:
            await self._notify_left(result.previous)

        if result.status is JoinStatus.FULL:
            logger.info("Rejected %s: room %s is full", connection_id, room_id)
            await self._send(connection_id, make_message(SignalType.ROOM_FULL, roomId=room_id))
        elif result.status is JoinStatus.JOINED:
            logger.info("%s joined room %s (%d occupant(s))", connection_id, room_id, len(result.occupants))
            if result.initiator is not None:
                await self._send(result.initiator, make_message(SignalType.READY, roomId=room_id))
        return result

    async def relay(self, kind: SignalType, sender_id: str, room_id: str, message: dict) -> int:
        """Forward ``message`` unchanged to the other occupants of ``room_id``.

        Returns the number of recipients. Senders outside the room and empty
        rooms result in no delivery.
        """

        if kind not in RELAY_TYPES:
            raise ValueError(f"{kind.value} is not relayable")

        if await self.registry.room_of(sender_id) != room_id:
            logger.warning("Dropping %s from %s: not an occupant of room %s", kind.value, sender_id, room_id)
            return 0

        recipients = await self.registry.others(room_id, sender_id)
        await self._fanout(recipients, message)
        return len(recipients)

    async def leave(self, connection_id: str) -> LeaveResult | None:
        """Remove a connection from its room and tell the remaining occupant."""

        result = await self.registry.leave(connection_id)
        if result is not None:
            logger.info("%s left room %s", connection_id, result.room_id)
            await self._notify_left(result)
        return result

    async def _notify_left(self, result: LeaveResult) -> None:
        await self._fanout(result.remaining, make_message(SignalType.PEER_LEFT, roomId=result.room_id))

    async def _send(self, connection_id: str, message: dict) -> None:
        await self._fanout([connection_id], message)

    async def _fanout(self, connection_ids: Iterable[str], message: dict) -> None:
        connections = [self._connections[cid] for cid in connection_ids if cid in self._connections]
        if not connections:
            return

        results = await asyncio.gather(
            *(connection.send(message) for connection in connections),
            return_exceptions=True,
        )
        for connection, outcome in zip(connections, results):
            if isinstance(outcome, Exception):
                logger.warning("Send to %s failed: %s", connection.connection_id, outcome)


relay = SignalingRelay()
