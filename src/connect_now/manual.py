"""Copy/paste signaling for participants without a shared store.

Descriptions travel as URL-safe base64 of ``{"type", "sdp"}`` JSON and
candidate batches as URL-safe base64 of a JSON array of candidate records.
The participant that creates the session uses the ``local`` token and the one
joining with a pasted offer uses ``remote``.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from typing import AsyncIterator, Iterable
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from .models import Candidate, DescriptionKind, Role, SessionDescription
from .signaling import AlreadyPublished, SessionNotFound, SignalingChannel, SignalingRecord

logger = logging.getLogger(__name__)

LOCAL_TOKEN = "local"
REMOTE_TOKEN = "remote"
ROLE_TOKENS = frozenset({LOCAL_TOKEN, REMOTE_TOKEN})


class MalformedRemoteInput(RuntimeError):
    """Raised when a pasted blob cannot be used."""


def _encode(payload: object) -> str:
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _decode(blob: str, what: str) -> object:
    if not isinstance(blob, str) or not blob.strip():
        raise MalformedRemoteInput(f"Pasted {what} is empty")
    text = "".join(blob.split())
    text += "=" * (-len(text) % 4)
    try:
        raw = base64.urlsafe_b64decode(text.encode("ascii"))
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise MalformedRemoteInput(f"Pasted {what} is not a valid blob: {exc}") from exc


def encode_description(description: SessionDescription) -> str:
    return _encode(description.to_dict())


def decode_description(blob: str) -> SessionDescription:
    payload = _decode(blob, "description")
    try:
        return SessionDescription.from_dict(payload)  # type: ignore[arg-type]
    except ValueError as exc:
        raise MalformedRemoteInput(f"Pasted description is invalid: {exc}") from exc


def encode_candidates(candidates: Iterable[Candidate]) -> str:
    return _encode([candidate.to_dict() for candidate in candidates])


def decode_candidates(blob: str) -> list[Candidate]:
    payload = _decode(blob, "candidates")
    if not isinstance(payload, list):
        raise MalformedRemoteInput("Pasted candidates must be a list")
    try:
        return [Candidate.from_dict(item) for item in payload]
    except ValueError as exc:
        raise MalformedRemoteInput(f"Pasted candidate is invalid: {exc}") from exc


def build_join_url(base_url: str, offer_blob: str) -> str:
    """Return *base_url* carrying the joiner's role token and the offer."""

    parts = urlsplit(base_url)
    query = parse_qs(parts.query, keep_blank_values=True)
    query["role"] = [REMOTE_TOKEN]
    query["offer"] = [offer_blob]
    return urlunsplit(parts._replace(query=urlencode(query, doseq=True)))


def parse_join_url(url: str) -> tuple[str, str]:
    """Return ``(token, offer_blob)`` from a link made by :func:`build_join_url`."""

    query = parse_qs(urlsplit(url).query)
    token = (query.get("role") or [""])[0]
    offer = (query.get("offer") or [""])[0]
    if token not in ROLE_TOKENS:
        raise MalformedRemoteInput(f"Unknown role token {token!r}")
    if not offer:
        raise MalformedRemoteInput("Join link carries no offer")
    return token, offer


class ManualSignalingChannel(SignalingChannel):
    """Signaling channel whose peer side is fed by pasted text.

    The channel keeps this participant's view of the record. Publishing
    stores the local half and makes it exportable; the peer's half only
    arrives through the ``apply_pasted_*`` calls. A joiner pastes the offer
    before the session starts, so role resolution sees an offer and settles
    on callee.
    """

    def __init__(self, token: str = LOCAL_TOKEN) -> None:
        if token not in ROLE_TOKENS:
            raise ValueError(f"Role token must be one of {sorted(ROLE_TOKENS)}")
        self._token = token
        self._record: SignalingRecord | None = None
        self._generation = 0
        self._changed = asyncio.Event()
        self._gathered: dict[Role, bool] = {}

    @property
    def token(self) -> str:
        return self._token

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------
    def apply_pasted_offer(self, blob: str) -> bool:
        """Accept the creator's offer; returns ``False`` for a repeated paste."""

        description = decode_description(blob)
        if description.kind is not DescriptionKind.OFFER:
            raise MalformedRemoteInput(f"Expected an offer, got an {description.kind.value}")
        if self._token != REMOTE_TOKEN:
            raise MalformedRemoteInput("Only the joining participant accepts an offer")
        record = self._ensure_record()
        return self._store_remote(record, description)

    def apply_pasted_answer(self, blob: str) -> bool:
        """Accept the joiner's answer; returns ``False`` for a repeated paste."""

        description = decode_description(blob)
        if description.kind is not DescriptionKind.ANSWER:
            raise MalformedRemoteInput(f"Expected an answer, got an {description.kind.value}")
        if self._token != LOCAL_TOKEN:
            raise MalformedRemoteInput("Only the creating participant accepts an answer")
        if self._record is None:
            raise MalformedRemoteInput("No session is waiting for an answer")
        return self._store_remote(self._record, description)

    def apply_pasted_candidates(self, blob: str) -> int:
        """Queue the peer's candidates; returns how many were new."""

        candidates = decode_candidates(blob)
        if self._record is None:
            raise MalformedRemoteInput("No session is waiting for candidates")
        peer = self._local_role().peer
        log = self._record.candidates_for(peer)
        added = 0
        for candidate in candidates:
            if candidate in log:
                continue
            log.append(candidate)
            added += 1
        if added:
            self._notify()
        return added

    def export_description(self) -> str | None:
        """Blob of the local description once it has been published."""

        if self._record is None:
            return None
        description = self._record.description_for(self._local_role())
        return encode_description(description) if description is not None else None

    def export_candidates(self) -> str | None:
        """Blob of the local candidates once gathering has completed."""

        role = self._local_role()
        if self._record is None or not self._gathered.get(role):
            return None
        return encode_candidates(self._record.candidates_for(role))

    def export_join_url(self, base_url: str) -> str | None:
        if self._token != LOCAL_TOKEN:
            return None
        blob = self.export_description()
        return build_join_url(base_url, blob) if blob is not None else None

    # ------------------------------------------------------------------
    # SignalingChannel
    # ------------------------------------------------------------------
    async def create_session(self, session_id: str | None = None) -> str:
        if session_id is not None and session_id != self._token:
            raise ValueError(f"Manual sessions are identified by their role token, not {session_id!r}")
        self._ensure_record()
        return self._token

    async def read_record(self, session_id: str) -> SignalingRecord:
        return self._require(session_id).snapshot()

    async def claim_role(self, session_id: str, role: Role) -> bool:
        record = self._require(session_id)
        if role is Role.UNRESOLVED:
            raise ValueError("Cannot claim the unresolved role")
        if record.is_claimed(role):
            return False
        if role is Role.CALLER:
            record.caller_claimed = True
        else:
            record.callee_claimed = True
        return True

    async def publish_description(
        self, session_id: str, description: SessionDescription
    ) -> None:
        record = self._require(session_id)
        role = description.kind.publisher
        if record.description_for(role) is not None:
            raise AlreadyPublished(session_id, role)
        if role is Role.CALLER:
            record.offer = description
        else:
            record.answer = description
        logger.info("Manual %s ready to export", description.kind.value)
        self._notify()

    async def subscribe_to_remote_description(
        self, session_id: str, role: Role
    ) -> AsyncIterator[SessionDescription]:
        record = self._require(session_id)
        generation = self._generation
        peer = role.peer
        while record.description_for(peer) is None:
            await self._changed.wait()
            if not self._is_current(generation):
                return
        yield record.description_for(peer)  # type: ignore[misc]
        while self._is_current(generation):
            await self._changed.wait()

    async def publish_candidate(
        self, session_id: str, role: Role, candidate: Candidate
    ) -> None:
        if self._record is None or session_id != self._token:
            logger.debug("Dropping local candidate for closed manual session")
            return
        log = self._record.candidates_for(role)
        if candidate not in log:
            log.append(candidate)

    async def subscribe_to_remote_candidates(
        self, session_id: str, role: Role
    ) -> AsyncIterator[Candidate]:
        record = self._require(session_id)
        generation = self._generation
        delivered = 0
        log = record.candidates_for(role.peer)
        while True:
            while delivered < len(log):
                delivered += 1
                yield log[delivered - 1]
            await self._changed.wait()
            if not self._is_current(generation):
                return

    async def local_gathering_complete(self, session_id: str, role: Role) -> None:
        self._gathered[role] = True
        logger.info("Manual candidate batch ready to export")
        self._notify()

    async def delete_session(self, session_id: str) -> None:
        if self._record is None:
            return
        self._record = None
        self._gathered.clear()
        self._notify()
        logger.info("Manual session %s discarded", self._token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _local_role(self) -> Role:
        return Role.CALLER if self._token == LOCAL_TOKEN else Role.CALLEE

    def _ensure_record(self) -> SignalingRecord:
        if self._record is None:
            self._generation += 1
            self._record = SignalingRecord(session_id=self._token, generation=self._generation)
        return self._record

    def _require(self, session_id: str) -> SignalingRecord:
        if self._record is None or session_id != self._token:
            raise SessionNotFound(session_id)
        return self._record

    def _is_current(self, generation: int) -> bool:
        return self._record is not None and self._generation == generation

    def _store_remote(self, record: SignalingRecord, description: SessionDescription) -> bool:
        current = record.offer if description.kind is DescriptionKind.OFFER else record.answer
        if current is not None:
            if current == description:
                return False
            raise MalformedRemoteInput(
                f"A different {description.kind.value} was already applied"
            )
        if description.kind is DescriptionKind.OFFER:
            record.offer = description
        else:
            record.answer = description
        self._notify()
        return True

    def _notify(self) -> None:
        event, self._changed = self._changed, asyncio.Event()
        event.set()


__all__ = [
    "LOCAL_TOKEN",
    "MalformedRemoteInput",
    "ManualSignalingChannel",
    "REMOTE_TOKEN",
    "ROLE_TOKENS",
    "build_join_url",
    "decode_candidates",
    "decode_description",
    "encode_candidates",
    "encode_description",
    "parse_join_url",
]
