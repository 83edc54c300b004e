from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from connect_now.config import IceSettings
from connect_now.media import (
    LocalMediaStream,
    MediaAcquisitionError,
    MediaBackend,
    MediaConstraints,
    PeerConnection,
)
from connect_now.models import Candidate, ConnectivityState, SessionDescription


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1


class FakeConnection(PeerConnection):
    """Scripted peer connection that announces two host candidates."""

    def __init__(self, name: str, *, emit_track: bool = True) -> None:
        super().__init__()
        self.name = name
        self.emit_track = emit_track
        self.local_tracks: list[Any] = []
        self.set_remote_calls = 0
        self.applied: list[Candidate] = []
        self.close_calls = 0

    def candidates(self) -> list[Candidate]:
        return [
            Candidate(
                candidate=f"candidate:{index} 1 udp 2122260223 10.0.0.{index} 5000 typ host",
                sdp_mid="0",
                sdp_mline_index=0,
                username_fragment=self.name,
            )
            for index in (1, 2)
        ]

    def add_local_track(self, track: Any) -> None:
        self.local_tracks.append(track)

    async def create_offer(self) -> SessionDescription:
        return SessionDescription(kind="offer", body=f"v=0\r\no={self.name} offer\r\n")

    async def create_answer(self) -> SessionDescription:
        if self._remote_description is None:
            raise RuntimeError("Cannot answer without a remote offer")
        return SessionDescription(kind="answer", body=f"v=0\r\no={self.name} answer\r\n")

    async def set_local_description(self, description: SessionDescription) -> None:
        self._local_description = description
        for candidate in self.candidates():
            self.emit("localcandidate", candidate)
        self.emit("gatheringcomplete")

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.set_remote_calls += 1
        self._remote_description = description
        if self.emit_track:
            self.emit("track", FakeTrack("video"))

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        if self._remote_description is None:
            raise RuntimeError("Remote description must be set first")
        self.applied.append(candidate)

    async def close(self) -> None:
        self.close_calls += 1

    def report(self, state: ConnectivityState) -> None:
        self.emit("connectionstatechange", state)


class FakeMediaBackend(MediaBackend):
    def __init__(
        self,
        name: str = "peer",
        *,
        error: MediaAcquisitionError | None = None,
        emit_track: bool = True,
    ) -> None:
        self.name = name
        self.error = error
        self.emit_track = emit_track
        self.acquisitions = 0
        self.streams: list[LocalMediaStream] = []
        self.connections: list[FakeConnection] = []

    async def acquire_local_media(self, constraints: MediaConstraints) -> LocalMediaStream:
        self.acquisitions += 1
        if self.error is not None:
            raise self.error
        tracks = []
        if constraints.audio:
            tracks.append(FakeTrack("audio"))
        if constraints.video:
            tracks.append(FakeTrack("video"))
        stream = LocalMediaStream(tracks)
        self.streams.append(stream)
        return stream

    def create_connection(self, ice: IceSettings) -> PeerConnection:
        connection = FakeConnection(f"{self.name}{len(self.connections)}", emit_track=self.emit_track)
        self.connections.append(connection)
        return connection


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds."""

    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def media_factory() -> Callable[..., FakeMediaBackend]:
    return FakeMediaBackend


@pytest.fixture
def fake_track() -> Callable[[str], FakeTrack]:
    return FakeTrack


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return eventually
