"""Join a room from the command line with the local camera and microphone."""
from __future__ import annotations

import argparse
import asyncio
import logging
import secrets

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from ..core.config import settings
from ..core.logging import configure_logging
from .media import Facing
from .orchestrator import PeerConnectionOrchestrator
from .session import ConnectionState

logger = logging.getLogger(__name__)


class RemoteSink:
    """Write remote tracks to a file, or discard them."""

    def __init__(self, path: str | None) -> None:
        self._recorder = MediaRecorder(path) if path else MediaBlackhole()
        self._started = False
        self._start_task: asyncio.Task | None = None

    def add(self, track) -> None:
        self._recorder.addTrack(track)

    def on_state(self, state: ConnectionState) -> None:
        print(f"connection: {state.value}")
        if state is ConnectionState.CONNECTED and not self._started:
            self._started = True
            self._start_task = asyncio.create_task(self._recorder.start())

    async def stop(self) -> None:
        if self._started:
            if self._start_task is not None:
                await self._start_task
            await self._recorder.stop()


def new_room_id() -> str:
    return secrets.token_hex(4)


async def run(room_id: str, facing: Facing, record: str | None) -> None:
    sink = RemoteSink(record)
    orchestrator = PeerConnectionOrchestrator(
        room_id,
        facing=facing,
        on_state_change=sink.on_state,
        on_track=sink.add,
    )
    try:
        session = await orchestrator.run()
        if session.error:
            print(f"session ended: {session.error}")
    finally:
        await orchestrator.close()
        await sink.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="pairlink peer client")
    parser.add_argument("room", nargs="?", help="room to join; a new one is generated when omitted")
    parser.add_argument("--facing", choices=[item.value for item in Facing], default=Facing.USER.value)
    parser.add_argument("--record", help="write the remote media to this file")
    parser.add_argument("--log-level", default=settings.log_level)
    args = parser.parse_args()

    configure_logging(args.log_level)
    room_id = args.room or new_room_id()
    print(f"room: {room_id} (signaling via {settings.signaling_url})")

    try:
        asyncio.run(run(room_id, Facing(args.facing), args.record))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
