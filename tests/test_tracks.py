from __future__ import annotations

import asyncio

import numpy as np
import pytest

pytest.importorskip("aiortc")
pytest.importorskip("av")

from connect_now.config import IceSettings, MediaSettings
from connect_now.media import AiortcMediaBackend, MediaConstraints
from connect_now.models import SessionDescription
from connect_now.tracks import SyntheticVideoTrack, ToggleableTrack


def test_synthetic_track_renders_requested_size() -> None:
    track = SyntheticVideoTrack(32, 24)
    frame = track.render()
    assert frame.shape == (24, 32, 3)
    assert frame.dtype == np.uint8
    with pytest.raises(ValueError):
        SyntheticVideoTrack(0, 24)


def test_disabled_video_track_sends_black_frames() -> None:
    async def scenario():
        track = ToggleableTrack(SyntheticVideoTrack(32, 24))
        live = await track.recv()
        track.enabled = False
        blank = await track.recv()
        track.stop()
        return live, blank

    live, blank = asyncio.run(scenario())
    assert live.to_ndarray(format="rgb24").any()
    assert (blank.width, blank.height) == (32, 24)
    assert not blank.to_ndarray(format="rgb24").any()


def test_synthetic_backend_offer_announces_media_sections() -> None:
    async def scenario() -> SessionDescription:
        backend = AiortcMediaBackend(MediaSettings(source="synthetic", width=64, height=48))
        stream = await backend.acquire_local_media(MediaConstraints())
        connection = backend.create_connection(IceSettings(servers=()))
        gathered: list[object] = []
        connection.on("gatheringcomplete", lambda: gathered.append(True))
        try:
            for track in stream.tracks:
                connection.add_local_track(track)
            offer = await connection.create_offer()
            await connection.set_local_description(offer)
            assert gathered == [True]
            return connection.local_description
        finally:
            stream.stop()
            await connection.close()

    description = asyncio.run(scenario())
    assert description.kind.value == "offer"
    assert "m=audio" in description.body
    assert "m=video" in description.body
