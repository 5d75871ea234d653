"""Signaling message contracts exchanged over the WebSocket."""
from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SignalType(str, enum.Enum):
    JOIN = "join"
    READY = "ready"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    PEER_LEFT = "peer-left"
    ROOM_FULL = "room-full"
    ERROR = "error"


RELAY_TYPES = frozenset({SignalType.OFFER, SignalType.ANSWER, SignalType.ICE_CANDIDATE})


class SessionDescription(BaseModel):
    type: str = Field(..., description="offer or answer")
    sdp: str


class IceCandidateInit(BaseModel):
    """Browser ``RTCIceCandidateInit`` shape."""

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")

    model_config = ConfigDict(populate_by_name=True)


def make_message(kind: SignalType, **fields: Any) -> dict[str, Any]:
    """Build a wire frame for ``kind`` with the given fields."""

    return {"type": kind.value, **fields}


def error_message(detail: str) -> dict[str, Any]:
    return make_message(SignalType.ERROR, message=detail)
