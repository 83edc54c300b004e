"""Tests for the Firestore channel using stub clients instead of Cloud Firestore."""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from connect_now import firestore as firestore_module
from connect_now.config import SignalingSettings
from connect_now.models import Candidate, Role, SessionDescription


class StubCredentials:
    def __init__(self) -> None:
        self.certificates: list[object] = []

    def Certificate(self, source):
        self.certificates.append(source)
        return ("certificate", source)

    def ApplicationDefault(self):
        return ("adc", None)


class StubWatch:
    def __init__(self) -> None:
        self.unsubscribed = False

    def unsubscribe(self) -> None:
        self.unsubscribed = True


class StubRef:
    """Document, collection and query stand-in that only supports watching."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.callback = None
        self.watch = StubWatch()
        self.children: dict[str, StubRef] = {}

    def _child(self, name: str) -> "StubRef":
        if name not in self.children:
            self.children[name] = StubRef(f"{self.path}/{name}")
        return self.children[name]

    def document(self, name: str) -> "StubRef":
        return self._child(name)

    def collection(self, name: str) -> "StubRef":
        return self._child(name)

    def order_by(self, field: str) -> "StubRef":
        return self

    def on_snapshot(self, callback) -> StubWatch:
        self.callback = callback
        return self.watch


class StubClient:
    def __init__(self) -> None:
        self.root = StubRef("")

    def collection(self, name: str) -> StubRef:
        return self.root.collection(name)


def _snapshot(data: dict | None):
    return SimpleNamespace(exists=data is not None, to_dict=lambda: data)


def _change(kind: str, doc_id: str, data: dict):
    return SimpleNamespace(
        type=SimpleNamespace(name=kind),
        document=SimpleNamespace(id=doc_id, to_dict=lambda: data),
    )


@pytest.fixture
def available(monkeypatch: pytest.MonkeyPatch) -> StubCredentials:
    stub = StubCredentials()
    monkeypatch.setattr(firestore_module, "_FIREBASE_IMPORT_ERROR", None)
    monkeypatch.setattr(firestore_module, "_credentials", stub)
    monkeypatch.delenv(firestore_module.CREDENTIALS_ENV, raising=False)
    return stub


def test_credentials_from_base64_environment(available, monkeypatch, tmp_path: Path) -> None:
    service_account = {"type": "service_account", "project_id": "demo"}
    encoded = base64.b64encode(json.dumps(service_account).encode("utf-8")).decode("ascii")
    monkeypatch.setenv(firestore_module.CREDENTIALS_ENV, encoded)
    settings = SignalingSettings(backend="firestore", credentials_path=str(tmp_path / "ignored.json"))
    assert firestore_module.load_credentials(settings) == ("certificate", service_account)


def test_credentials_from_file_or_default(available, tmp_path: Path) -> None:
    path = tmp_path / "service-account.json"
    path.write_text("{}")
    settings = SignalingSettings(backend="firestore", credentials_path=str(path))
    assert firestore_module.load_credentials(settings) == ("certificate", str(path))
    assert firestore_module.load_credentials(SignalingSettings(backend="firestore")) == ("adc", None)

    missing = SignalingSettings(backend="firestore", credentials_path=str(tmp_path / "nope.json"))
    with pytest.raises(RuntimeError, match="not found"):
        firestore_module.load_credentials(missing)


def test_undecodable_environment_credentials(available, monkeypatch) -> None:
    monkeypatch.setenv(firestore_module.CREDENTIALS_ENV, "%%%")
    with pytest.raises(RuntimeError, match=firestore_module.CREDENTIALS_ENV):
        firestore_module.load_credentials(SignalingSettings(backend="firestore"))


def test_missing_dependency_is_reported(monkeypatch) -> None:
    monkeypatch.setattr(firestore_module, "_FIREBASE_IMPORT_ERROR", ImportError("firebase_admin"))
    with pytest.raises(RuntimeError, match="firebase-admin is required"):
        firestore_module.FirestoreSignalingChannel(StubClient())


def test_candidate_watch_yields_new_entries_until_removed(available, wait_until) -> None:
    client = StubClient()
    channel = firestore_module.FirestoreSignalingChannel(client, "rooms")
    query = client.root.children["rooms"].document("room1").collection("calleeCandidates")
    first = Candidate("candidate:1 1 udp 1 10.0.0.1 9 typ host", "0", 0)
    second = Candidate("candidate:2 1 udp 1 10.0.0.2 9 typ host", "0", 0)

    async def scenario() -> list[Candidate]:
        received: list[Candidate] = []

        async def listen() -> None:
            async for candidate in channel.subscribe_to_remote_candidates("room1", Role.CALLER):
                received.append(candidate)

        listener = asyncio.ensure_future(listen())
        await wait_until(lambda: query.callback is not None)
        await asyncio.to_thread(query.callback, [], [_change("ADDED", "a", first.to_dict())], None)
        await asyncio.to_thread(
            query.callback,
            [],
            [
                _change("ADDED", "a", first.to_dict()),
                _change("MODIFIED", "a", first.to_dict()),
                _change("ADDED", "bad", {"sdpMid": "0"}),
                _change("ADDED", "b", second.to_dict()),
            ],
            None,
        )
        await asyncio.to_thread(query.callback, [], [_change("REMOVED", "a", first.to_dict())], None)
        await asyncio.wait_for(listener, 2)
        return received

    assert asyncio.run(scenario()) == [first, second]
    assert query.watch.unsubscribed


def test_description_watch_follows_room_document(available, wait_until) -> None:
    client = StubClient()
    channel = firestore_module.FirestoreSignalingChannel(client)
    room = client.root.children["rooms"].document("room1")
    answer = SessionDescription(kind="answer", body="v=0\r\n")

    async def scenario() -> list[SessionDescription]:
        received: list[SessionDescription] = []

        async def listen() -> None:
            async for description in channel.subscribe_to_remote_description("room1", Role.CALLER):
                received.append(description)

        listener = asyncio.ensure_future(listen())
        await wait_until(lambda: room.callback is not None)
        offer_only = {"offer": {"type": "offer", "sdp": "v=0\r\n"}}
        await asyncio.to_thread(room.callback, [_snapshot(offer_only)], [], None)
        await asyncio.to_thread(
            room.callback, [_snapshot({**offer_only, "answer": answer.to_dict()})], [], None
        )
        await asyncio.to_thread(room.callback, [_snapshot(None)], [], None)
        await asyncio.wait_for(listener, 2)
        return received

    assert asyncio.run(scenario()) == [answer]
    assert room.watch.unsubscribed
