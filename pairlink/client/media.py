"""Local camera/microphone capture for the peer client.

Capture goes through aiortc's ``MediaPlayer`` (FFmpeg devices such as v4l2 or
pulse). Each captured track is wrapped in a ``ToggleableTrack`` so muting keeps
the track alive and only blanks its frames.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Protocol

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Facing(str, enum.Enum):
    USER = "user"
    ENVIRONMENT = "environment"

    @property
    def opposite(self) -> "Facing":
        return Facing.ENVIRONMENT if self is Facing.USER else Facing.USER


class MediaPermissionError(RuntimeError):
    """Raised when camera or microphone access is denied or unavailable."""


class ToggleableTrack(MediaStreamTrack):
    """Relay frames from a capture track, blanking them while disabled."""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence_like(frame)
        return _black_like(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


def _black_like(frame: VideoFrame) -> VideoFrame:
    blank = VideoFrame(width=frame.width, height=frame.height, format="rgb24")
    for plane in blank.planes:
        plane.update(bytes(plane.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def _silence_like(frame: AudioFrame) -> AudioFrame:
    blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in blank.planes:
        plane.update(bytes(plane.buffer_size))
    blank.sample_rate = frame.sample_rate
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


@dataclass
class LocalStream:
    """One capture session: at most one audio and one video track."""

    facing: Facing
    audio: Optional[ToggleableTrack] = None
    video: Optional[ToggleableTrack] = None
    sources: List[Any] = field(default_factory=list)

    def tracks(self) -> list[ToggleableTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


def _stop_player(player: Any) -> None:
    """Stop every track of a ``MediaPlayer``, which releases its device."""

    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


def _audio_sources(stream: LocalStream | None) -> list[Any]:
    """Players of ``stream`` that carry no video; they survive a camera switch."""

    if stream is None:
        return []
    return [source for source in stream.sources if getattr(source, "video", None) is None]


def _discard_player(opening: asyncio.Future) -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    logger.info("Closing capture device opened after cancellation")
    _stop_player(opening.result())


@dataclass(slots=True)
class VideoInput:
    device_id: str
    facing: Facing


class MediaDevices(Protocol):
    """The capture backend the manager talks to."""

    async def get_user_media(self, facing: Facing, *, audio: bool = True, video: bool = True) -> LocalStream: ...

    async def enumerate_video_inputs(self) -> list[VideoInput]: ...


class PlayerMediaDevices:
    """``MediaDevices`` backed by FFmpeg capture devices."""

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or default_settings

    def _camera_device(self, facing: Facing) -> str:
        if facing is Facing.ENVIRONMENT:
            return self._settings.camera_environment_device
        return self._settings.camera_user_device

    def _open_player(self, device: str, fmt: str, options: dict[str, str] | None = None) -> MediaPlayer:
        try:
            return MediaPlayer(device, format=fmt, options=options or {})
        except (OSError, FFmpegError) as exc:
            raise MediaPermissionError(f"Cannot open {device}: {exc}") from exc

    async def _open(self, device: str, fmt: str, options: dict[str, str] | None) -> MediaPlayer:
        loop = asyncio.get_running_loop()
        opening = loop.run_in_executor(None, self._open_player, device, fmt, options)
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; close the device once it opens.
            opening.add_done_callback(_discard_player)
            raise

    async def get_user_media(self, facing: Facing, *, audio: bool = True, video: bool = True) -> LocalStream:
        stream = LocalStream(facing=facing)
        try:
            if video:
                device = self._camera_device(facing)
                camera = await self._open(device, self._settings.camera_format, self._settings.camera_options)
                if camera.video is None:
                    _stop_player(camera)
                    raise MediaPermissionError(f"{device} has no video stream")
                stream.video = ToggleableTrack(camera.video)
                stream.sources.append(camera)

            if audio:
                device = self._settings.microphone_device
                microphone = await self._open(device, self._settings.microphone_format, None)
                if microphone.audio is None:
                    _stop_player(microphone)
                    raise MediaPermissionError(f"{device} has no audio stream")
                stream.audio = ToggleableTrack(microphone.audio)
                stream.sources.append(microphone)
        except BaseException:
            stream.stop()
            raise
        return stream

    async def enumerate_video_inputs(self) -> list[VideoInput]:
        inputs: list[VideoInput] = []
        seen: set[str] = set()
        for facing in Facing:
            device = self._camera_device(facing)
            if not device or device in seen:
                continue
            if device.startswith("/dev/") and not Path(device).exists():
                continue
            seen.add(device)
            inputs.append(VideoInput(device_id=device, facing=facing))
        return inputs


class MediaTrackManager:
    """Own the local capture stream for one room visit."""

    def __init__(self, devices: MediaDevices | None = None) -> None:
        self.devices: MediaDevices = devices if devices is not None else PlayerMediaDevices()
        self.stream: LocalStream | None = None
        self.facing = Facing.USER
        self.audio_enabled = True
        self.video_enabled = True
        self.can_switch_facing = False
        self.permission_error: str | None = None

    async def acquire(self, facing: Facing = Facing.USER) -> LocalStream:
        """Open camera and microphone, replacing any stream already held."""

        try:
            stream = await self.devices.get_user_media(facing)
        except MediaPermissionError as exc:
            self.permission_error = str(exc)
            logger.warning("Media access failed: %s", exc)
            raise

        self._replace(stream)
        await self._refresh_inputs()
        return stream

    async def switch_facing(self, pc: Any = None) -> LocalStream:
        """Move to the opposite camera without renegotiating the connection."""

        target = self.facing.opposite
        try:
            fresh = await self.devices.get_user_media(target, audio=False)
        except MediaPermissionError as exc:
            self.permission_error = str(exc)
            logger.warning("Camera switch failed: %s", exc)
            raise

        previous = self.stream
        stream = LocalStream(
            facing=target,
            audio=previous.audio if previous else None,
            video=fresh.video,
            sources=fresh.sources + _audio_sources(previous),
        )
        if previous is not None and previous.video is not None:
            previous.video.stop()
        self._adopt(stream)

        if pc is not None and stream.video is not None:
            for sender in pc.getSenders():
                if sender.track is not None and sender.track.kind == "video":
                    sender.replaceTrack(stream.video)
        logger.info("Switched camera to %s", target.value)
        return stream

    def toggle_audio(self) -> bool:
        self.audio_enabled = self._toggle("audio", self.audio_enabled)
        return self.audio_enabled

    def toggle_video(self) -> bool:
        self.video_enabled = self._toggle("video", self.video_enabled)
        return self.video_enabled

    def attach(self, pc: Any) -> None:
        """Add the current tracks to ``pc``."""

        if self.stream is None:
            return
        for track in self.stream.tracks():
            pc.addTrack(track)

    def release(self) -> None:
        if self.stream is not None:
            self.stream.stop()
            self.stream = None

    def _toggle(self, kind: str, current: bool) -> bool:
        if self.stream is None:
            return current
        track = self.stream.audio if kind == "audio" else self.stream.video
        if track is None:
            return current
        track.enabled = not current
        return track.enabled

    def _replace(self, stream: LocalStream) -> None:
        previous = self.stream
        self._adopt(stream)
        if previous is not None:
            previous.stop()

    def _adopt(self, stream: LocalStream) -> None:
        self.stream = stream
        self.facing = stream.facing
        self.permission_error = None
        for track in stream.tracks():
            track.enabled = True
        self.audio_enabled = True
        self.video_enabled = True

    async def _refresh_inputs(self) -> None:
        inputs = await self.devices.enumerate_video_inputs()
        self.can_switch_facing = len(inputs) > 1
