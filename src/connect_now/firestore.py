"""Signaling records kept in Cloud Firestore.

Layout per session, under the configured collection (``rooms`` by default)::

    rooms/<session id>                      offer, answer, callerClaimed, calleeClaimed
    rooms/<session id>/callerCandidates/*   one document per candidate
    rooms/<session id>/calleeCandidates/*

Set-once fields are written inside transactions. Firestore watch callbacks
run on a background thread and are handed to the event loop through
``call_soon_threadsafe``; every blocking client call runs in a worker thread.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from typing import Any, AsyncIterator, Callable

from .config import SignalingSettings
from .models import Candidate, Role, SessionDescription
from .signaling import (
    AlreadyPublished,
    SessionNotFound,
    SignalingChannel,
    SignalingRecord,
)

try:  # pragma: no cover - optional dependency
    import firebase_admin as _firebase_admin
    from firebase_admin import credentials as _credentials
    from firebase_admin import firestore as _firestore
    from google.api_core import exceptions as _google_exceptions
except ImportError as exc:  # pragma: no cover - handled at runtime
    _firebase_admin = None  # type: ignore[assignment]
    _credentials = None  # type: ignore[assignment]
    _firestore = None  # type: ignore[assignment]
    _google_exceptions = None  # type: ignore[assignment]
    _FIREBASE_IMPORT_ERROR = exc
else:  # pragma: no cover - executed when dependency is installed
    _FIREBASE_IMPORT_ERROR = None


logger = logging.getLogger(__name__)

CREDENTIALS_ENV = "FIREBASE_CREDENTIALS_BASE64"
_OFFER = "offer"
_ANSWER = "answer"
_CLAIMS = {Role.CALLER: "callerClaimed", Role.CALLEE: "calleeClaimed"}
_ORDER_FIELD = "createdAt"


def _ensure_firebase_available() -> None:
    if _FIREBASE_IMPORT_ERROR is not None:
        raise RuntimeError(
            "firebase-admin is required for Firestore signaling. Install the 'firebase-admin' package."
        ) from _FIREBASE_IMPORT_ERROR


def load_credentials(settings: SignalingSettings):
    """Return Firebase credentials from the environment, a file or ADC.

    ``FIREBASE_CREDENTIALS_BASE64`` holds a base64 encoded service account
    JSON document and wins over ``settings.credentials_path``. Without
    either, Application Default Credentials are used.
    """

    _ensure_firebase_available()
    encoded = os.environ.get(CREDENTIALS_ENV)
    if encoded:
        try:
            payload = json.loads(base64.b64decode(encoded).decode("utf-8"))
        except ValueError as exc:
            raise RuntimeError(f"Failed to decode {CREDENTIALS_ENV}: {exc}") from exc
        return _credentials.Certificate(payload)
    if settings.credentials_path:
        if not os.path.exists(settings.credentials_path):
            raise RuntimeError(
                f"Firebase credentials file not found: {settings.credentials_path}"
            )
        return _credentials.Certificate(settings.credentials_path)
    return _credentials.ApplicationDefault()


def initialise_firestore(settings: SignalingSettings):
    """Initialise the default Firebase app once and return a Firestore client."""

    _ensure_firebase_available()
    try:
        app = _firebase_admin.get_app()
    except ValueError:
        options = {"projectId": settings.project_id} if settings.project_id else None
        app = _firebase_admin.initialize_app(load_credentials(settings), options)
        logger.info("Firebase app initialised for project %s", settings.project_id or "(default)")
    return _firestore.client(app)


def _description(payload: Any) -> SessionDescription | None:
    if not payload:
        return None
    return SessionDescription.from_dict(payload)


class FirestoreSignalingChannel(SignalingChannel):
    """:class:`SignalingChannel` over a Firestore collection of rooms."""

    def __init__(self, client: Any, collection: str = "rooms") -> None:
        _ensure_firebase_available()
        self._client = client
        self._collection = client.collection(collection)

    @classmethod
    def from_settings(cls, settings: SignalingSettings) -> "FirestoreSignalingChannel":
        return cls(initialise_firestore(settings), settings.collection)

    def _room(self, session_id: str):
        return self._collection.document(session_id)

    def _candidates(self, session_id: str, role: Role):
        return self._room(session_id).collection(role.candidates_key)

    async def create_session(self, session_id: str | None = None) -> str:
        room = self._collection.document(session_id) if session_id else self._collection.document()
        try:
            await asyncio.to_thread(room.create, {_ORDER_FIELD: _firestore.SERVER_TIMESTAMP})
        except _google_exceptions.AlreadyExists:
            logger.debug("Room %s already exists", room.id)
        else:
            logger.info("Room %s created", room.id)
        return room.id

    async def read_record(self, session_id: str) -> SignalingRecord:
        snapshot = await asyncio.to_thread(self._room(session_id).get)
        if not snapshot.exists:
            raise SessionNotFound(session_id)
        data = snapshot.to_dict() or {}
        record = SignalingRecord(
            session_id=session_id,
            offer=_description(data.get(_OFFER)),
            answer=_description(data.get(_ANSWER)),
            caller_claimed=bool(data.get(_CLAIMS[Role.CALLER])),
            callee_claimed=bool(data.get(_CLAIMS[Role.CALLEE])),
        )
        for role in (Role.CALLER, Role.CALLEE):
            record.candidates_for(role).extend(await self._read_candidates(session_id, role))
        return record

    async def _read_candidates(self, session_id: str, role: Role) -> list[Candidate]:
        query = self._candidates(session_id, role).order_by(_ORDER_FIELD)
        documents = await asyncio.to_thread(lambda: list(query.stream()))
        return [Candidate.from_dict(document.to_dict() or {}) for document in documents]

    async def _set_once(
        self, session_id: str, field: str, value: Any, on_conflict: Callable[[], Exception] | None
    ) -> bool:
        room = self._room(session_id)

        @_firestore.transactional
        def apply(transaction) -> bool:
            snapshot = room.get(transaction=transaction)
            if not snapshot.exists:
                raise SessionNotFound(session_id)
            if (snapshot.to_dict() or {}).get(field):
                if on_conflict is not None:
                    raise on_conflict()
                return False
            transaction.update(room, {field: value})
            return True

        return await asyncio.to_thread(lambda: apply(self._client.transaction()))

    async def claim_role(self, session_id: str, role: Role) -> bool:
        if role is Role.UNRESOLVED:
            raise ValueError("Cannot claim the unresolved role")
        return await self._set_once(session_id, _CLAIMS[role], True, None)

    async def publish_description(
        self, session_id: str, description: SessionDescription
    ) -> None:
        role = description.kind.publisher
        field = _OFFER if role is Role.CALLER else _ANSWER
        await self._set_once(
            session_id,
            field,
            description.to_dict(),
            lambda: AlreadyPublished(session_id, role),
        )
        logger.debug("Published %s to room %s", field, session_id)

    async def publish_candidate(
        self, session_id: str, role: Role, candidate: Candidate
    ) -> None:
        payload = {**candidate.to_dict(), _ORDER_FIELD: _firestore.SERVER_TIMESTAMP}
        await asyncio.to_thread(self._candidates(session_id, role).add, payload)

    async def _watch(self, target: Any) -> tuple[asyncio.Queue, Any]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def on_snapshot(documents, changes, read_time) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, (documents, changes))
            except RuntimeError:  # pragma: no cover - loop already closed
                logger.debug("Dropping Firestore snapshot after loop shutdown")

        watch = await asyncio.to_thread(target.on_snapshot, on_snapshot)
        return queue, watch

    async def subscribe_to_remote_description(
        self, session_id: str, role: Role
    ) -> AsyncIterator[SessionDescription]:
        field = _OFFER if role.peer is Role.CALLER else _ANSWER
        room = self._room(session_id)
        queue, watch = await self._watch(room)
        try:
            while True:
                documents, _changes = await queue.get()
                snapshot = documents[0] if documents else None
                if snapshot is None or not snapshot.exists:
                    return
                description = _description((snapshot.to_dict() or {}).get(field))
                if description is not None:
                    yield description
        finally:
            await asyncio.to_thread(watch.unsubscribe)

    async def subscribe_to_remote_candidates(
        self, session_id: str, role: Role
    ) -> AsyncIterator[Candidate]:
        query = self._candidates(session_id, role.peer).order_by(_ORDER_FIELD)
        queue, watch = await self._watch(query)
        seen: set[str] = set()
        try:
            while True:
                _documents, changes = await queue.get()
                for change in changes:
                    if change.type.name == "REMOVED":
                        return
                    document = change.document
                    if change.type.name != "ADDED" or document.id in seen:
                        continue
                    seen.add(document.id)
                    try:
                        candidate = Candidate.from_dict(document.to_dict() or {})
                    except ValueError:
                        logger.warning(
                            "Skipping malformed candidate %s in room %s", document.id, session_id
                        )
                        continue
                    yield candidate
        finally:
            await asyncio.to_thread(watch.unsubscribe)

    async def delete_session(self, session_id: str) -> None:
        room = self._room(session_id)

        def purge() -> int:
            removed = 0
            batch = self._client.batch()
            for role in (Role.CALLER, Role.CALLEE):
                for document in room.collection(role.candidates_key).stream():
                    batch.delete(document.reference)
                    removed += 1
            batch.delete(room)
            batch.commit()
            return removed

        removed = await asyncio.to_thread(purge)
        logger.info("Room %s deleted with %d candidates", session_id, removed)


__all__ = [
    "CREDENTIALS_ENV",
    "FirestoreSignalingChannel",
    "initialise_firestore",
    "load_credentials",
]
