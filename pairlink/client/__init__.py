from .media import Facing, LocalStream, MediaPermissionError, MediaTrackManager, PlayerMediaDevices
from .orchestrator import NegotiationError, PeerConnectionOrchestrator
from .session import ConnectionState, MediaPolicy, PeerSession, Role, SessionPhase, map_connection_state
from .signaling import SignalingChannel, SignalingError

__all__ = [
    "ConnectionState",
    "Facing",
    "LocalStream",
    "MediaPermissionError",
    "MediaPolicy",
    "MediaTrackManager",
    "NegotiationError",
    "PeerConnectionOrchestrator",
    "PeerSession",
    "PlayerMediaDevices",
    "Role",
    "SessionPhase",
    "SignalingChannel",
    "SignalingError",
    "map_connection_state",
]
