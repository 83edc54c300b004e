from __future__ import annotations

import asyncio
import base64
import json

import pytest

from connect_now.manual import (
    LOCAL_TOKEN,
    REMOTE_TOKEN,
    MalformedRemoteInput,
    ManualSignalingChannel,
    build_join_url,
    decode_candidates,
    decode_description,
    encode_candidates,
    encode_description,
    parse_join_url,
)
from connect_now.models import Candidate, Role, SessionDescription, SessionState
from connect_now.session import CallSession
from connect_now.signaling import SessionNotFound


def run_async(coro):
    return asyncio.run(asyncio.wait_for(coro, 5))


OFFER = SessionDescription(kind="offer", body="v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\n")
ANSWER = SessionDescription(kind="answer", body="v=0\r\no=- 2 1 IN IP4 0.0.0.0\r\ns=-\r\n")


def test_description_blob_preserves_type_and_body() -> None:
    blob = encode_description(OFFER)
    assert "\n" not in blob
    assert decode_description(blob) == OFFER
    # Pasting often wraps long lines or drops padding.
    wrapped = "\n".join(blob[i : i + 40] for i in range(0, len(blob), 40)).rstrip("=")
    assert decode_description(wrapped) == OFFER


def test_candidate_blob_round_trip() -> None:
    candidates = [
        Candidate("candidate:1 1 udp 2122260223 10.0.0.1 5000 typ host", "0", 0, "abcd"),
        Candidate("candidate:2 1 udp 1686052607 203.0.113.9 5000 typ srflx", "0", 0),
    ]
    assert decode_candidates(encode_candidates(candidates)) == candidates


@pytest.mark.parametrize("blob", ["", "   ", "not a blob at all!", encode_candidates([])])
def test_garbage_description_blob_rejected(blob: str) -> None:
    with pytest.raises(MalformedRemoteInput):
        decode_description(blob)


def test_candidate_blob_must_hold_candidates() -> None:
    with pytest.raises(MalformedRemoteInput):
        decode_candidates(encode_description(OFFER))
    with pytest.raises(MalformedRemoteInput):
        decode_candidates(base64.urlsafe_b64encode(b'[{"sdpMid": "0"}]').decode("ascii"))


def test_join_url_carries_role_token_and_offer() -> None:
    blob = encode_description(OFFER)
    url = build_join_url("https://example.org/call?lang=en", blob)
    assert url.startswith("https://example.org/call?")
    assert "lang=en" in url
    assert parse_join_url(url) == (REMOTE_TOKEN, blob)
    with pytest.raises(MalformedRemoteInput):
        parse_join_url("https://example.org/call?role=spectator&offer=abc")
    with pytest.raises(MalformedRemoteInput):
        parse_join_url("https://example.org/call?role=remote")


def test_offer_paste_rules() -> None:
    joiner = ManualSignalingChannel(REMOTE_TOKEN)
    with pytest.raises(MalformedRemoteInput):
        joiner.apply_pasted_offer(encode_description(ANSWER))
    assert joiner.apply_pasted_offer(encode_description(OFFER))
    assert not joiner.apply_pasted_offer(encode_description(OFFER))
    other = SessionDescription(kind="offer", body="v=0\r\nother\r\n")
    with pytest.raises(MalformedRemoteInput):
        joiner.apply_pasted_offer(encode_description(other))

    creator = ManualSignalingChannel(LOCAL_TOKEN)
    with pytest.raises(MalformedRemoteInput):
        creator.apply_pasted_offer(encode_description(OFFER))
    with pytest.raises(MalformedRemoteInput):
        creator.apply_pasted_answer(encode_description(ANSWER))
    with pytest.raises(MalformedRemoteInput):
        joiner.apply_pasted_answer(encode_description(ANSWER))


def test_channel_requires_known_token() -> None:
    with pytest.raises(ValueError):
        ManualSignalingChannel("observer")


def test_manual_copy_paste_call_connects(media_factory, wait_until) -> None:
    async def scenario() -> None:
        creator_channel = ManualSignalingChannel(LOCAL_TOKEN)
        creator_media = media_factory("creator")
        creator = CallSession(None, creator_channel, creator_media, create=True)
        await creator.start()
        assert creator.session_id == LOCAL_TOKEN
        assert creator.role is Role.CALLER
        assert creator_channel.export_join_url("https://example.org/call") is not None
        await wait_until(lambda: creator_channel.export_candidates() is not None)
        offer_blob = creator_channel.export_description()

        joiner_channel = ManualSignalingChannel(REMOTE_TOKEN)
        joiner_channel.apply_pasted_offer(offer_blob)
        joiner_media = media_factory("joiner")
        joiner = CallSession(REMOTE_TOKEN, joiner_channel, joiner_media)
        await joiner.start()
        assert joiner.role is Role.CALLEE
        assert joiner_channel.export_join_url("https://example.org/call") is None
        await wait_until(lambda: joiner_channel.export_candidates() is not None)
        assert joiner_channel.apply_pasted_candidates(creator_channel.export_candidates()) == 2
        assert joiner_channel.apply_pasted_candidates(creator_channel.export_candidates()) == 0

        assert creator_channel.apply_pasted_answer(joiner_channel.export_description())
        assert creator_channel.apply_pasted_candidates(joiner_channel.export_candidates()) == 2

        await creator.wait_for_state(SessionState.CONNECTED)
        await joiner.wait_for_state(SessionState.CONNECTED)
        await wait_until(
            lambda: len(creator.applied_remote_candidates) == 2
            and len(joiner.applied_remote_candidates) == 2
        )
        assert creator.applied_remote_candidates == joiner_media.connections[0].candidates()
        assert joiner.applied_remote_candidates == creator_media.connections[0].candidates()
        assert creator.answers_applied == 1

        await creator.hangup()
        await joiner.hangup()
        assert creator_channel.export_description() is None

    run_async(scenario())


def test_malformed_answer_leaves_caller_waiting(media_factory) -> None:
    async def scenario() -> None:
        channel = ManualSignalingChannel(LOCAL_TOKEN)
        session = CallSession(None, channel, media_factory("creator"), create=True)
        await session.start()
        with pytest.raises(MalformedRemoteInput):
            channel.apply_pasted_answer("this is not an answer")
        with pytest.raises(MalformedRemoteInput):
            channel.apply_pasted_answer(encode_description(OFFER))
        await asyncio.sleep(0.02)
        assert session.state is SessionState.AWAITING_ANSWER
        assert session.error is None
        await session.hangup()

    run_async(scenario())


def test_joiner_without_offer_fails_before_media(media_factory) -> None:
    async def scenario() -> None:
        media = media_factory("joiner")
        session = CallSession(REMOTE_TOKEN, ManualSignalingChannel(REMOTE_TOKEN), media)
        with pytest.raises(SessionNotFound):
            await session.start()
        assert media.acquisitions == 0
        assert session.state is SessionState.FAILED

    run_async(scenario())


def test_candidate_with_structured_fields_is_rejected_without_disturbing_session(
    media_factory,
) -> None:
    async def scenario() -> None:
        channel = ManualSignalingChannel(LOCAL_TOKEN)
        session = CallSession(None, channel, media_factory("creator"), create=True)
        await session.start()
        pasted = [
            {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMid": ["0"]},
            {"candidate": "candidate:2 1 udp 1 10.0.0.2 9 typ host", "usernameFragment": {}},
        ]
        for entry in pasted:
            blob = base64.urlsafe_b64encode(json.dumps([entry]).encode("utf-8")).decode("ascii")
            with pytest.raises(MalformedRemoteInput):
                channel.apply_pasted_candidates(blob)
        await asyncio.sleep(0.05)
        assert session.state is SessionState.AWAITING_ANSWER
        assert session.error is None
        assert session.pending_remote_candidates == []
        await session.hangup()

    run_async(scenario())
