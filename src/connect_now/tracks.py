"""Local media tracks used when publishing a participant's stream."""
from __future__ import annotations

import logging
import time

import numpy as np
from aiortc.mediastreams import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from av import AudioFrame, VideoFrame

logger = logging.getLogger(__name__)


class SyntheticVideoTrack(VideoStreamTrack):
    """Moving gradient test pattern for hosts without a camera."""

    def __init__(self, width: int = 640, height: int = 480) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("Synthetic video dimensions must be positive")
        super().__init__()
        self._width = int(width)
        self._height = int(height)
        self._start = time.perf_counter()

    def render(self) -> np.ndarray:
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        return np.stack([red, green, blue], axis=2).astype(np.uint8)

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = VideoFrame.from_ndarray(self.render(), format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


def create_silent_audio_track() -> MediaStreamTrack:
    """Return an aiortc track producing silence."""

    return AudioStreamTrack()


def _blank_video(frame: VideoFrame) -> VideoFrame:
    blank = VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def _silence_audio(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(
        format=frame.format.name, layout=frame.layout.name, samples=frame.samples
    )
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


class ToggleableTrack(MediaStreamTrack):
    """Relay a source track, blanking its frames while disabled.

    Mirrors the browser's ``track.enabled`` switch: the sender keeps
    transmitting, but a muted microphone sends silence and a disabled camera
    sends black frames.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self._source = source
        self.enabled = True

    async def recv(self):
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if self.kind == "video":
            return _blank_video(frame)
        return _silence_audio(frame)

    def stop(self) -> None:
        super().stop()
        try:
            self._source.stop()
        except Exception:  # pragma: no cover - logging only
            logger.debug("Ignoring error while stopping source track", exc_info=True)


__all__ = ["SyntheticVideoTrack", "ToggleableTrack", "create_silent_audio_track"]
