"""Shared dummies for client-side tests."""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from pairlink.client.media import Facing, LocalStream, MediaPermissionError, VideoInput


class DummyTrack:
    def __init__(self, kind: str, label: str, log: list) -> None:
        self.kind = kind
        self.label = label
        self.enabled = True
        self.stopped = False
        self._log = log

    def stop(self) -> None:
        if not self.stopped:
            self.stopped = True
            self._log.append(f"stop:{self.label}")


class DummyDevices:
    """Capture backend handing out dummy tracks."""

    def __init__(self, log: list, *, fail: bool = False, cameras: int = 2) -> None:
        self.log = log
        self.fail = fail
        self.cameras = cameras
        self.requests: list[tuple[Facing, bool, bool]] = []

    async def get_user_media(self, facing: Facing, *, audio: bool = True, video: bool = True) -> LocalStream:
        self.requests.append((facing, audio, video))
        if self.fail:
            raise MediaPermissionError("Permission denied")
        n = len(self.requests)
        stream = LocalStream(facing=facing)
        if video:
            stream.video = DummyTrack("video", f"video{n}", self.log)
            stream.sources.append(SimpleNamespace(label=f"camera{n}", video=stream.video, audio=None))
        if audio:
            stream.audio = DummyTrack("audio", f"audio{n}", self.log)
            stream.sources.append(SimpleNamespace(label=f"microphone{n}", video=None, audio=stream.audio))
        return stream

    async def enumerate_video_inputs(self) -> list[VideoInput]:
        inputs = [VideoInput("cam0", Facing.USER), VideoInput("cam1", Facing.ENVIRONMENT)]
        return inputs[: self.cameras]


@pytest.fixture
def event_log() -> list:
    return []


@pytest.fixture
def make_devices(event_log):
    def factory(**kwargs) -> DummyDevices:
        return DummyDevices(event_log, **kwargs)

    return factory
