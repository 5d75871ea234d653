"""Tests for the client-side negotiation state machine."""
from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from aiortc.sdp import candidate_from_sdp

from pairlink.client.media import MediaTrackManager
from pairlink.client.orchestrator import PeerConnectionOrchestrator
from pairlink.client.session import ConnectionState, MediaPolicy, Role, SessionPhase

ROOM = "abc123"
CANDIDATE_1 = "candidate:1 1 udp 2122260223 192.0.2.1 50001 typ host"
CANDIDATE_2 = "candidate:2 1 udp 1686052607 198.51.100.7 50002 typ srflx raddr 192.0.2.1 rport 50001"


class DummyPeerConnection:
    def __init__(self, log: list) -> None:
        self.log = log
        self.handlers: dict = {}
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.tracks: list = []
        self.transceivers: list = []
        self.candidates: list = []

    def on(self, event: str, handler) -> None:
        self.handlers[event] = handler

    async def emit(self, event: str, *args) -> None:
        await self.handlers[event](*args)

    async def createOffer(self):  # noqa: N802 - mirrors RTCPeerConnection
        self.log.append("create-offer")
        return SimpleNamespace(type="offer", sdp="local-offer")

    async def createAnswer(self):  # noqa: N802
        self.log.append("create-answer")
        return SimpleNamespace(type="answer", sdp="local-answer")

    async def setLocalDescription(self, description) -> None:  # noqa: N802
        self.log.append(f"set-local:{description.type}")
        self.localDescription = description

    async def setRemoteDescription(self, description) -> None:  # noqa: N802
        if not description.sdp.startswith("v=0"):
            raise ValueError("Invalid SDP")
        self.log.append(f"set-remote:{description.type}")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate) -> None:  # noqa: N802
        assert self.remoteDescription is not None, "candidate applied before remote description"
        self.log.append(f"add-candidate:{candidate.foundation}")
        self.candidates.append(candidate)

    def addTrack(self, track) -> None:  # noqa: N802
        self.tracks.append(track)

    def addTransceiver(self, kind: str, direction: str) -> None:  # noqa: N802
        self.transceivers.append((kind, direction))

    async def close(self) -> None:
        self.log.append("pc-close")
        self.connectionState = "closed"


class DummyChannel:
    def __init__(self, log: list, *, fail_connect: bool = False, connect_delay: float = 0.0) -> None:
        self.log = log
        self.fail_connect = fail_connect
        self.connect_delay = connect_delay
        self.connected = False
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = 0

    async def connect(self) -> None:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connect:
            raise OSError("connection refused")
        self.connected = True

    async def send(self, message: dict) -> None:
        self.sent.append(message)

    async def messages(self):
        while True:
            message = await self.incoming.get()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        self.closed += 1
        self.connected = False
        self.log.append("signaling-close")
        self.incoming.put_nowait(None)


async def no_ice(_url: str) -> list[dict]:
    return []


@pytest.fixture
def build(event_log, make_devices):
    def factory(*, fail_media: bool = False, policy: MediaPolicy = MediaPolicy.REQUIRE, **kwargs):
        pc = DummyPeerConnection(event_log)
        channel = DummyChannel(
            event_log,
            fail_connect=kwargs.pop("fail_connect", False),
            connect_delay=kwargs.pop("connect_delay", 0.0),
        )
        states: list[ConnectionState] = []
        orchestrator = PeerConnectionOrchestrator(
            ROOM,
            media=MediaTrackManager(make_devices(fail=fail_media)),
            channel=channel,
            pc_factory=lambda servers: pc,
            ice_servers=no_ice,
            media_policy=policy,
            on_state_change=states.append,
            **kwargs,
        )
        return orchestrator, pc, channel, states

    return factory


def _candidate(line: str) -> dict:
    return {"type": "ice-candidate", "roomId": ROOM, "candidate": {"candidate": line, "sdpMid": "0", "sdpMLineIndex": 0}}


@pytest.mark.asyncio
async def test_start_joins_room_and_attaches_media(build):
    orchestrator, pc, channel, _ = build()

    await orchestrator.start()
    await orchestrator.session.media_settled.wait()

    assert channel.sent[0] == {"type": "join", "roomId": ROOM}
    assert orchestrator.session.phase is SessionPhase.SIGNALING
    assert orchestrator.session.role is None
    assert [track.kind for track in pc.tracks] == ["audio", "video"]
    assert orchestrator.state is ConnectionState.CONNECTING
    await orchestrator.close()


@pytest.mark.asyncio
async def test_initiator_offers_then_applies_answer_and_flushes_candidates(build, event_log):
    orchestrator, pc, channel, _ = build()
    await orchestrator.start()

    await orchestrator.handle_message({"type": "ready", "roomId": ROOM})
    await orchestrator.handle_message(_candidate(CANDIDATE_1))
    await orchestrator.handle_message(_candidate(CANDIDATE_2))

    assert orchestrator.session.role is Role.INITIATOR
    assert channel.sent[-1] == {"type": "offer", "roomId": ROOM, "sdp": {"type": "offer", "sdp": "local-offer"}}
    assert len(orchestrator.session.pending_candidates) == 2
    assert pc.candidates == []

    await orchestrator.handle_message({"type": "answer", "roomId": ROOM, "sdp": {"type": "answer", "sdp": "v=0 remote"}})

    assert event_log == [
        "create-offer",
        "set-local:offer",
        "set-remote:answer",
        "add-candidate:1",
        "add-candidate:2",
    ]
    assert not orchestrator.session.pending_candidates
    assert orchestrator.session.phase is SessionPhase.CONNECTING

    await orchestrator.handle_message(_candidate(CANDIDATE_1))
    assert event_log[-1] == "add-candidate:1"
    assert pc.candidates[-1].sdpMid == "0"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_responder_buffers_early_candidates_until_offer(build, event_log):
    orchestrator, pc, channel, _ = build()
    await orchestrator.start()

    await orchestrator.handle_message(_candidate(CANDIDATE_2))
    await orchestrator.handle_message(_candidate(CANDIDATE_1))
    await orchestrator.handle_message({"type": "offer", "roomId": ROOM, "sdp": {"type": "offer", "sdp": "v=0 remote"}})

    assert orchestrator.session.role is Role.RESPONDER
    assert event_log == [
        "set-remote:offer",
        "add-candidate:2",
        "add-candidate:1",
        "create-answer",
        "set-local:answer",
    ]
    assert channel.sent[-1] == {"type": "answer", "roomId": ROOM, "sdp": {"type": "answer", "sdp": "local-answer"}}
    await orchestrator.close()


@pytest.mark.asyncio
async def test_answer_before_offer_fails_session(build):
    orchestrator, pc, channel, states = build()
    await orchestrator.start()

    await orchestrator.handle_message({"type": "answer", "roomId": ROOM, "sdp": {"type": "answer", "sdp": "v=0"}})

    assert orchestrator.session.phase is SessionPhase.FAILED
    assert states == [ConnectionState.FAILED]
    assert pc.remoteDescription is None
    assert orchestrator.session.closed.is_set()


@pytest.mark.asyncio
async def test_malformed_offer_fails_session(build):
    orchestrator, pc, channel, states = build()
    await orchestrator.start()

    await orchestrator.handle_message({"type": "offer", "roomId": ROOM, "sdp": {"type": "offer", "sdp": "garbage"}})

    assert orchestrator.state is ConnectionState.FAILED
    assert "Invalid SDP" in orchestrator.session.error
    assert channel.closed == 1


@pytest.mark.asyncio
async def test_native_states_are_normalized(build):
    orchestrator, pc, channel, states = build()
    await orchestrator.start()

    for native in ("checking", "connected"):
        pc.connectionState = native
        await pc.emit("connectionstatechange")
    assert orchestrator.session.phase is SessionPhase.CONNECTED

    pc.connectionState = "disconnected"
    await pc.emit("connectionstatechange")

    assert states == [ConnectionState.CONNECTED, ConnectionState.FAILED]
    assert orchestrator.session.phase is SessionPhase.FAILED


@pytest.mark.asyncio
async def test_local_candidates_are_sent_immediately(build):
    orchestrator, pc, channel, _ = build()
    await orchestrator.start()
    candidate = candidate_from_sdp(CANDIDATE_1[len("candidate:"):])
    candidate.sdpMid = "0"
    candidate.sdpMLineIndex = 0

    await pc.emit("icecandidate", candidate)
    await pc.emit("icecandidate", None)

    sent = channel.sent[-1]
    assert sent["type"] == "ice-candidate"
    assert sent["roomId"] == ROOM
    assert sent["candidate"]["candidate"].startswith("candidate:1 1 udp")
    assert sent["candidate"]["sdpMid"] == "0"
    assert len([message for message in channel.sent if message["type"] == "ice-candidate"]) == 1
    await orchestrator.close()


@pytest.mark.asyncio
async def test_remote_tracks_reach_sink(build):
    received: list = []
    orchestrator, pc, channel, _ = build(on_track=received.append)
    await orchestrator.start()
    track = SimpleNamespace(kind="video")

    await pc.emit("track", track)

    assert received == [track]
    assert orchestrator.session.remote_tracks == [track]
    await orchestrator.close()


@pytest.mark.asyncio
async def test_teardown_order_and_idempotence(build, event_log):
    orchestrator, pc, channel, states = build()
    await orchestrator.start()
    await orchestrator.session.media_settled.wait()

    await orchestrator.close()
    await orchestrator.close()

    assert event_log == ["stop:audio1", "stop:video1", "pc-close", "signaling-close"]
    assert states == [ConnectionState.CLOSED]
    assert orchestrator.session.phase is SessionPhase.CLOSED
    assert orchestrator.session.closed.is_set()


@pytest.mark.asyncio
async def test_peer_left_closes_session_via_read_loop(build):
    orchestrator, pc, channel, states = build()
    runner = asyncio.create_task(orchestrator.run())
    await asyncio.sleep(0)
    await orchestrator.session.media_settled.wait()

    await channel.incoming.put({"type": "peer-left", "roomId": ROOM})
    session = await asyncio.wait_for(runner, timeout=1)

    assert session.phase is SessionPhase.CLOSED
    assert states == [ConnectionState.CLOSED]
    assert "pc-close" in pc.log


@pytest.mark.asyncio
async def test_room_full_fails_session(build):
    orchestrator, pc, channel, states = build()
    await orchestrator.start()

    await orchestrator.handle_message({"type": "room-full", "roomId": ROOM})

    assert orchestrator.session.phase is SessionPhase.FAILED
    assert orchestrator.session.error == "room full"


@pytest.mark.asyncio
async def test_required_media_denied_fails_without_offering(build):
    orchestrator, pc, channel, states = build(fail_media=True)

    await orchestrator.start()
    await asyncio.wait_for(orchestrator.session.closed.wait(), timeout=1)
    await orchestrator.handle_message({"type": "ready", "roomId": ROOM})

    assert orchestrator.session.phase is SessionPhase.FAILED
    assert "Permission denied" in orchestrator.session.error
    assert orchestrator.media.permission_error == "Permission denied"
    assert all(message["type"] != "offer" for message in channel.sent)


@pytest.mark.asyncio
async def test_optional_media_denied_negotiates_receive_only(build):
    orchestrator, pc, channel, _ = build(fail_media=True, policy=MediaPolicy.OPTIONAL)
    await orchestrator.start()

    await orchestrator.handle_message({"type": "ready", "roomId": ROOM})

    assert pc.tracks == []
    assert pc.transceivers == [("audio", "recvonly"), ("video", "recvonly")]
    assert channel.sent[-1]["type"] == "offer"
    assert orchestrator.media.permission_error == "Permission denied"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_offer_waits_for_pending_media(build):
    orchestrator, pc, channel, _ = build()
    gate = asyncio.Event()
    original = orchestrator.media.devices.get_user_media

    async def slow_media(*args, **kwargs):
        await gate.wait()
        return await original(*args, **kwargs)

    orchestrator.media.devices.get_user_media = slow_media
    await orchestrator.start()

    ready = asyncio.create_task(orchestrator.handle_message({"type": "ready", "roomId": ROOM}))
    await asyncio.sleep(0)
    assert not any(message["type"] == "offer" for message in channel.sent)

    gate.set()
    await asyncio.wait_for(ready, timeout=1)

    assert [track.kind for track in pc.tracks] == ["audio", "video"]
    assert channel.sent[-1]["type"] == "offer"
    await orchestrator.close()


@pytest.mark.asyncio
async def test_unreachable_signaling_fails_session(build):
    orchestrator, pc, channel, states = build(fail_connect=True)

    await orchestrator.start()

    assert orchestrator.session.phase is SessionPhase.FAILED
    assert states == [ConnectionState.FAILED]
    assert "pc-close" in pc.log


@pytest.mark.asyncio
async def test_media_denied_while_connecting_never_joins(build):
    orchestrator, pc, channel, states = build(fail_media=True, connect_delay=0.05)

    await orchestrator.start()

    assert orchestrator.session.phase is SessionPhase.FAILED
    assert states == [ConnectionState.FAILED]
    assert channel.sent == []
    assert not channel.connected
    assert orchestrator.session.closed.is_set()


@pytest.mark.asyncio
async def test_close_during_acquisition_stops_acquired_tracks(build, event_log):
    orchestrator, pc, channel, _ = build()
    devices = orchestrator.media.devices
    gate = asyncio.Event()
    original = devices.enumerate_video_inputs

    async def slow_inputs():
        await gate.wait()
        return await original()

    devices.enumerate_video_inputs = slow_inputs
    await orchestrator.start()
    while not devices.requests:
        await asyncio.sleep(0)

    await orchestrator.close()

    assert event_log == ["stop:audio1", "stop:video1", "pc-close", "signaling-close"]
    assert orchestrator.media.stream is None
    assert pc.tracks == []
    assert orchestrator.session.media_settled.is_set()
