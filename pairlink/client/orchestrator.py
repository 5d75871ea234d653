"""Client-side negotiation for one two-party room.

The orchestrator owns a single ``PeerSession`` and drives an aiortc
``RTCPeerConnection`` from the signaling events relayed by the server:

* ``ready``: this side joined first and becomes the initiator; it sends an offer.
* ``offer``: this side becomes the responder; it answers.
* ``answer``: completes the initiator's exchange.
* ``ice-candidate``: applied once a remote description exists, queued before.
* ``peer-left`` / ``room-full``: the session ends.

Media acquisition and the signaling connection start concurrently; offers and
answers wait on ``PeerSession.media_settled`` rather than polling for a stream.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..core.config import Settings, settings as default_settings
from ..schemas.signaling import SignalType, make_message
from .ice import fetch_ice_servers, to_rtc_configuration
from .media import Facing, MediaPermissionError, MediaTrackManager
from .session import (
    ConnectionState,
    MediaPolicy,
    PeerSession,
    Role,
    SessionPhase,
    map_connection_state,
)
from .signaling import SignalingChannel

logger = logging.getLogger(__name__)

PeerConnectionFactory = Callable[[list[dict]], Any]
StateListener = Callable[[ConnectionState], None]
TrackSink = Callable[[Any], Optional[Awaitable[None]]]


class NegotiationError(RuntimeError):
    """Raised when signaling events arrive out of the expected order."""


def description_to_dict(description: Any) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(payload: dict) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])


def candidate_to_dict(candidate: Any) -> dict:
    return {
        "candidate": f"candidate:{candidate_to_sdp(candidate)}",
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(payload: dict) -> RTCIceCandidate:
    """Parse the browser ``RTCIceCandidateInit`` shape."""

    line = payload["candidate"]
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def default_peer_connection(servers: list[dict]) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=to_rtc_configuration(servers))


class PeerConnectionOrchestrator:
    """Run one negotiation session for ``room_id``."""

    def __init__(
        self,
        room_id: str,
        *,
        media: MediaTrackManager | None = None,
        channel: SignalingChannel | None = None,
        pc_factory: PeerConnectionFactory = default_peer_connection,
        ice_servers: Callable[[str], Awaitable[list[dict]]] = fetch_ice_servers,
        media_policy: MediaPolicy | str | None = None,
        facing: Facing = Facing.USER,
        on_state_change: StateListener | None = None,
        on_track: TrackSink | None = None,
        config: Settings | None = None,
    ) -> None:
        self._settings = config or default_settings
        self.session = PeerSession(room_id=room_id)
        self.media = media if media is not None else MediaTrackManager()
        self.channel = channel if channel is not None else SignalingChannel(self._settings.signaling_url)
        self.media_policy = MediaPolicy(media_policy or self._settings.media_policy)
        self._pc_factory = pc_factory
        self._ice_servers = ice_servers
        self._facing = facing
        self._on_state_change = on_state_change
        self._on_track = on_track
        self._tasks: list[asyncio.Task] = []
        self._released = False

    @property
    def state(self) -> ConnectionState:
        return self.session.connection_state

    async def run(self) -> PeerSession:
        """Start the session and wait until it ends."""

        await self.start()
        await self.session.closed.wait()
        return self.session

    async def start(self) -> None:
        session = self.session
        session.phase = SessionPhase.ACQUIRING_MEDIA

        servers = await self._ice_servers(self._settings.signaling_url)
        session.pc = self._pc_factory(servers)
        self._wire_peer_connection(session)

        self._tasks.append(asyncio.create_task(self._acquire_media(session)))
        try:
            await self.channel.connect()
            if session.terminal:
                # Media failed while the socket was opening; teardown already ran.
                await self.channel.close()
                return
            await self.channel.send(make_message(SignalType.JOIN, roomId=session.room_id))
        except Exception as exc:  # noqa: BLE001 - any connect failure ends the session
            if session.terminal:
                return
            logger.error("Cannot reach signaling server: %s", exc)
            await self._fail(session, f"signaling unavailable: {exc}")
            return

        if session.terminal:
            return
        session.phase = SessionPhase.SIGNALING
        self._tasks.append(asyncio.create_task(self._read_loop(session)))

    async def close(self) -> None:
        """Stop media, close the connection, then disconnect signaling. Safe to repeat."""

        session = self.session
        if session.phase is not SessionPhase.CLOSED:
            session.phase = SessionPhase.CLOSED
            self._publish(session, ConnectionState.CLOSED)
        await self._release(session)

    async def handle_message(self, message: dict) -> None:
        """Apply one relayed signaling frame to the session."""

        session = self.session
        if session.terminal:
            return

        kind = message.get("type")
        handler = self._handlers.get(kind)
        if handler is None:
            logger.debug("Ignoring signaling frame %r", kind)
            return
        try:
            await handler(self, session, message)
        except Exception as exc:  # noqa: BLE001 - bad remote payloads fail only this session
            logger.exception("Negotiation failed on %s", kind)
            await self._fail(session, f"{kind}: {exc}")

    async def _on_ready(self, session: PeerSession, message: dict) -> None:
        self._claim_role(session, Role.INITIATOR)
        if not await self._media_ready(session):
            return
        pc = session.pc
        if not session.media_available:
            pc.addTransceiver("audio", direction="recvonly")
            pc.addTransceiver("video", direction="recvonly")
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        session.local_offer_set = True
        await self._send(session, SignalType.OFFER, sdp=description_to_dict(pc.localDescription))
        session.phase = SessionPhase.CONNECTING
        logger.info("Sent offer for room %s", session.room_id)

    async def _on_offer(self, session: PeerSession, message: dict) -> None:
        self._claim_role(session, Role.RESPONDER)
        if not await self._media_ready(session):
            return
        pc = session.pc
        await self._apply_remote_description(session, message["sdp"])
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        await self._send(session, SignalType.ANSWER, sdp=description_to_dict(pc.localDescription))
        session.phase = SessionPhase.CONNECTING
        logger.info("Sent answer for room %s", session.room_id)

    async def _on_answer(self, session: PeerSession, message: dict) -> None:
        if session.role is not Role.INITIATOR or not session.local_offer_set:
            raise NegotiationError("answer received before a local offer was set")
        await self._apply_remote_description(session, message["sdp"])
        logger.info("Applied answer for room %s", session.room_id)

    async def _on_ice_candidate(self, session: PeerSession, message: dict) -> None:
        payload = message.get("candidate")
        if not payload or not payload.get("candidate"):
            return
        if not session.remote_description_set:
            session.pending_candidates.append(payload)
            return
        await session.pc.addIceCandidate(candidate_from_dict(payload))

    async def _on_peer_left(self, session: PeerSession, message: dict) -> None:
        logger.info("Peer left room %s", session.room_id)
        await self.close()

    async def _on_room_full(self, session: PeerSession, message: dict) -> None:
        logger.warning("Room %s is full", session.room_id)
        await self._fail(session, "room full")

    _handlers = {
        SignalType.READY.value: _on_ready,
        SignalType.OFFER.value: _on_offer,
        SignalType.ANSWER.value: _on_answer,
        SignalType.ICE_CANDIDATE.value: _on_ice_candidate,
        SignalType.PEER_LEFT.value: _on_peer_left,
        SignalType.ROOM_FULL.value: _on_room_full,
    }

    def _claim_role(self, session: PeerSession, role: Role) -> None:
        if session.role is None:
            session.role = role
        elif session.role is not role:
            raise NegotiationError(f"already negotiating as {session.role.value}")

    async def _apply_remote_description(self, session: PeerSession, payload: dict) -> None:
        await session.pc.setRemoteDescription(description_from_dict(payload))
        session.remote_description_set = True
        while session.pending_candidates:
            queued = session.pending_candidates.popleft()
            await session.pc.addIceCandidate(candidate_from_dict(queued))

    async def _media_ready(self, session: PeerSession) -> bool:
        await session.media_settled.wait()
        if session.terminal:
            return False
        return session.media_available or self.media_policy is MediaPolicy.OPTIONAL

    async def _acquire_media(self, session: PeerSession) -> None:
        try:
            await self.media.acquire(self._facing)
        except MediaPermissionError as exc:
            if self.media_policy is MediaPolicy.REQUIRE:
                await self._fail(session, f"media unavailable: {exc}")
                return
            session.error = str(exc)
            logger.info("Continuing without local media")
        else:
            if session.terminal:
                self.media.release()
            else:
                self.media.attach(session.pc)
                session.media_available = True
        finally:
            session.media_settled.set()

    async def _read_loop(self, session: PeerSession) -> None:
        async for message in self.channel.messages():
            await self.handle_message(message)
            if session.terminal:
                return
        if not session.terminal:
            logger.info("Signaling ended for room %s", session.room_id)
            await self.close()

    def _wire_peer_connection(self, session: PeerSession) -> None:
        pc = session.pc

        async def on_connection_state_change() -> None:
            await self._on_native_state(session, pc.connectionState)

        async def on_ice_candidate(candidate: Any) -> None:
            if candidate is None or session.terminal:
                return
            await self._send(session, SignalType.ICE_CANDIDATE, candidate=candidate_to_dict(candidate))

        async def on_track(track: Any) -> None:
            session.remote_tracks.append(track)
            logger.info("Remote %s track received", track.kind)
            if self._on_track is not None:
                result = self._on_track(track)
                if asyncio.iscoroutine(result):
                    await result

        pc.on("connectionstatechange", on_connection_state_change)
        pc.on("icecandidate", on_ice_candidate)
        pc.on("track", on_track)

    async def _on_native_state(self, session: PeerSession, native: str) -> None:
        state = map_connection_state(native)
        logger.info("Connection state %s -> %s", native, state.value)
        if session.terminal:
            return
        if state is ConnectionState.FAILED:
            await self._fail(session, f"connection {native}")
        elif state is ConnectionState.CLOSED:
            await self.close()
        else:
            self._publish(session, state)
            if state is ConnectionState.CONNECTED:
                session.phase = SessionPhase.CONNECTED

    def _publish(self, session: PeerSession, state: ConnectionState) -> None:
        if session.connection_state is state:
            return
        session.connection_state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    async def _send(self, session: PeerSession, kind: SignalType, **fields: Any) -> None:
        await self.channel.send(make_message(kind, roomId=session.room_id, **fields))

    async def _fail(self, session: PeerSession, reason: str) -> None:
        if session.terminal:
            return
        session.error = reason
        session.phase = SessionPhase.FAILED
        self._publish(session, ConnectionState.FAILED)
        await self._release(session)

    async def _release(self, session: PeerSession) -> None:
        if self._released:
            return
        self._released = True
        session.media_settled.set()

        # Other tasks end before media release.
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        self.media.release()
        if session.pc is not None:
            await session.pc.close()
        await self.channel.close()
        session.closed.set()
        logger.info("Session for room %s ended (%s)", session.room_id, session.phase.value)
