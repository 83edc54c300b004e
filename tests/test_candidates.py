from __future__ import annotations

import asyncio
import logging

from connect_now.candidates import CandidateBuffer
from connect_now.models import Candidate, SessionDescription

from conftest import FakeConnection


def run_async(coro):
    return asyncio.run(coro)


def _candidate(index: int) -> Candidate:
    return Candidate(f"candidate:{index} 1 udp 1 10.0.0.{index} 9 typ host", "0", 0)


class RecordingPublisher:
    def __init__(self, *, fail: bool = False) -> None:
        self.published: list[Candidate] = []
        self.fail = fail

    async def __call__(self, candidate: Candidate) -> None:
        if self.fail:
            raise RuntimeError("channel offline")
        self.published.append(candidate)


def test_remote_candidates_are_held_until_description_then_flushed_in_order() -> None:
    async def scenario() -> None:
        connection = FakeConnection("callee", emit_track=False)
        buffer = CandidateBuffer(connection, RecordingPublisher())
        for index in (1, 2, 3):
            assert await buffer.add_remote(_candidate(index))
        assert buffer.pending_remote_candidates == [_candidate(1), _candidate(2), _candidate(3)]
        assert connection.applied == []
        assert await buffer.flush() == 0

        await connection.set_remote_description(SessionDescription(kind="offer", body="v=0"))
        assert await buffer.flush() == 3
        assert connection.applied == [_candidate(1), _candidate(2), _candidate(3)]
        assert buffer.pending_remote_candidates == []

        await buffer.add_remote(_candidate(4))
        assert connection.applied[-1] == _candidate(4)
        assert buffer.applied_remote_candidates == connection.applied

    run_async(scenario())


def test_duplicate_remote_candidates_are_applied_once() -> None:
    async def scenario() -> None:
        connection = FakeConnection("caller", emit_track=False)
        buffer = CandidateBuffer(connection, RecordingPublisher())
        await buffer.add_remote(_candidate(1))
        assert not await buffer.add_remote(_candidate(1))
        await connection.set_remote_description(SessionDescription(kind="answer", body="v=0"))
        await buffer.flush()
        assert not await buffer.add_remote(_candidate(1))
        assert connection.applied == [_candidate(1)]

    run_async(scenario())


def test_rejected_remote_candidate_is_not_recorded(caplog) -> None:
    class PickyConnection(FakeConnection):
        async def add_remote_candidate(self, candidate: Candidate) -> None:
            raise ValueError("bad candidate")

    async def scenario() -> CandidateBuffer:
        connection = PickyConnection("caller")
        await connection.set_remote_description(SessionDescription(kind="answer", body="v=0"))
        buffer = CandidateBuffer(connection, RecordingPublisher())
        await buffer.add_remote(_candidate(1))
        return buffer

    with caplog.at_level(logging.WARNING, logger="connect_now.candidates"):
        buffer = run_async(scenario())
    assert buffer.applied_remote_candidates == []
    assert "rejected" in caplog.text


def test_local_candidates_are_published_once_and_gathering_flagged() -> None:
    async def scenario() -> None:
        publisher = RecordingPublisher()
        buffer = CandidateBuffer(FakeConnection("caller"), publisher)
        assert buffer.add_local(_candidate(1))
        assert not buffer.add_local(_candidate(1))
        assert buffer.add_local(_candidate(2))
        assert buffer.mark_gathering_complete()
        assert not buffer.mark_gathering_complete()
        await buffer.drain()
        assert publisher.published == [_candidate(1), _candidate(2)]
        assert await buffer.wait_for_gathering() == [_candidate(1), _candidate(2)]

    run_async(scenario())


def test_publish_failure_is_logged_not_raised(caplog) -> None:
    async def scenario() -> CandidateBuffer:
        buffer = CandidateBuffer(FakeConnection("caller"), RecordingPublisher(fail=True))
        buffer.add_local(_candidate(1))
        await buffer.drain()
        await asyncio.sleep(0)
        return buffer

    with caplog.at_level(logging.WARNING, logger="connect_now.candidates"):
        buffer = run_async(scenario())
    assert buffer.local_candidates == [_candidate(1)]
    assert "Failed to publish local candidate" in caplog.text
