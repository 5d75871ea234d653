"""Per-room negotiation state shared by the orchestrator's event handlers."""
from __future__ import annotations

import asyncio
import enum
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, List, Optional


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring-media"
    SIGNALING = "signaling"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_PHASES = frozenset({SessionPhase.FAILED, SessionPhase.CLOSED})


class Role(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class MediaPolicy(str, enum.Enum):
    """Whether negotiation may continue when local capture is unavailable."""

    REQUIRE = "require"
    OPTIONAL = "optional"


def map_connection_state(native: str | None) -> ConnectionState:
    """Collapse a native ``RTCPeerConnection.connectionState`` into four values."""

    if native == "connected":
        return ConnectionState.CONNECTED
    if native in ("disconnected", "failed"):
        return ConnectionState.FAILED
    if native == "closed":
        return ConnectionState.CLOSED
    return ConnectionState.CONNECTING


@dataclass
class PeerSession:
    """Everything one room visit owns.

    A new session is built for every visit; nothing (role included) carries
    over from a previous one.
    """

    room_id: str
    pc: Any = None
    role: Optional[Role] = None
    phase: SessionPhase = SessionPhase.IDLE
    connection_state: ConnectionState = ConnectionState.CONNECTING
    local_offer_set: bool = False
    remote_description_set: bool = False
    pending_candidates: Deque[dict] = field(default_factory=deque)
    remote_tracks: List[Any] = field(default_factory=list)
    media_settled: asyncio.Event = field(default_factory=asyncio.Event)
    media_available: bool = False
    error: Optional[str] = None
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES
