"""Signaling channel contract and the process-local implementation."""
from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import AsyncIterator

from .models import Candidate, Role, SessionDescription

logger = logging.getLogger(__name__)


class SignalingError(RuntimeError):
    """Base error raised by signaling channels."""


class SessionNotFound(SignalingError):
    """Raised when a session identifier has no signaling record."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} not found")
        self.session_id = session_id


class SessionFull(SignalingError):
    """Raised when both roles of a session are already taken."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} already has a caller and a callee")
        self.session_id = session_id


class AlreadyPublished(SignalingError, AssertionError):
    """Raised when a role publishes its description a second time."""

    def __init__(self, session_id: str, role: Role) -> None:
        super().__init__(
            f"The {role.value} description for session {session_id!r} was already published"
        )
        self.session_id = session_id
        self.role = role


@dataclass(slots=True)
class SignalingRecord:
    """Snapshot of the shared state kept for one session."""

    session_id: str
    offer: SessionDescription | None = None
    answer: SessionDescription | None = None
    caller_claimed: bool = False
    callee_claimed: bool = False
    caller_candidates: list[Candidate] = field(default_factory=list)
    callee_candidates: list[Candidate] = field(default_factory=list)
    generation: int = 0

    @property
    def empty(self) -> bool:
        return self.offer is None and self.answer is None

    def description_for(self, role: Role) -> SessionDescription | None:
        if role is Role.CALLER:
            return self.offer
        if role is Role.CALLEE:
            return self.answer
        return None

    def candidates_for(self, role: Role) -> list[Candidate]:
        if role is Role.CALLER:
            return self.caller_candidates
        if role is Role.CALLEE:
            return self.callee_candidates
        raise ValueError("An unresolved role owns no candidate log")

    def is_claimed(self, role: Role) -> bool:
        if role is Role.CALLER:
            return self.caller_claimed
        if role is Role.CALLEE:
            return self.callee_claimed
        return False

    def snapshot(self) -> "SignalingRecord":
        return replace(
            self,
            caller_candidates=list(self.caller_candidates),
            callee_candidates=list(self.callee_candidates),
        )


class SignalingChannel(ABC):
    """Exchange of descriptions and candidates between the two participants."""

    @abstractmethod
    async def create_session(self, session_id: str | None = None) -> str:
        """Ensure an empty record exists and return its identifier."""

    @abstractmethod
    async def read_record(self, session_id: str) -> SignalingRecord:
        """Return a snapshot of the record or raise :class:`SessionNotFound`."""

    @abstractmethod
    async def claim_role(self, session_id: str, role: Role) -> bool:
        """Atomically claim *role*; ``False`` when another participant holds it."""

    @abstractmethod
    async def publish_description(
        self, session_id: str, description: SessionDescription
    ) -> None:
        """Store *description* once for the role implied by its kind."""

    @abstractmethod
    def subscribe_to_remote_description(
        self, session_id: str, role: Role
    ) -> AsyncIterator[SessionDescription]:
        """Yield the peer's description once it becomes available."""

    @abstractmethod
    async def publish_candidate(
        self, session_id: str, role: Role, candidate: Candidate
    ) -> None:
        """Append *candidate* to the log owned by *role*."""

    @abstractmethod
    def subscribe_to_remote_candidates(
        self, session_id: str, role: Role
    ) -> AsyncIterator[Candidate]:
        """Yield the peer's candidates in append order."""

    async def local_gathering_complete(self, session_id: str, role: Role) -> None:
        """Called once local candidate gathering has finished."""

        return None

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Purge every artifact of *session_id*; absent records are ignored."""

    async def close(self) -> None:
        return None


class InMemorySignalingChannel(SignalingChannel):
    """Shared record store living inside one event loop.

    Useful when both participants are driven by the same process (tests, the
    bundled API server) and as the reference behaviour for other channels.
    """

    def __init__(self) -> None:
        self._records: dict[str, SignalingRecord] = {}
        self._changed = asyncio.Condition()
        self._generations = itertools.count(1)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def _require(self, session_id: str) -> SignalingRecord:
        record = self._records.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    def _is_current(self, session_id: str, generation: int) -> bool:
        record = self._records.get(session_id)
        return record is not None and record.generation == generation

    async def create_session(self, session_id: str | None = None) -> str:
        if session_id is None:
            session_id = uuid.uuid4().hex
        elif not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("Session identifier must be a non-empty string")
        async with self._changed:
            if session_id not in self._records:
                self._records[session_id] = SignalingRecord(
                    session_id=session_id, generation=next(self._generations)
                )
                logger.info("Signaling record %s created", session_id)
                self._changed.notify_all()
        return session_id

    async def read_record(self, session_id: str) -> SignalingRecord:
        async with self._changed:
            return self._require(session_id).snapshot()

    async def claim_role(self, session_id: str, role: Role) -> bool:
        if role is Role.UNRESOLVED:
            raise ValueError("Cannot claim the unresolved role")
        async with self._changed:
            record = self._require(session_id)
            if record.is_claimed(role):
                return False
            if role is Role.CALLER:
                record.caller_claimed = True
            else:
                record.callee_claimed = True
            self._changed.notify_all()
            return True

    async def publish_description(
        self, session_id: str, description: SessionDescription
    ) -> None:
        role = description.kind.publisher
        async with self._changed:
            record = self._require(session_id)
            if record.description_for(role) is not None:
                raise AlreadyPublished(session_id, role)
            if role is Role.CALLER:
                record.offer = description
            else:
                record.answer = description
            self._changed.notify_all()
        logger.debug("Published %s for session %s", description.kind.value, session_id)

    async def subscribe_to_remote_description(
        self, session_id: str, role: Role
    ) -> AsyncIterator[SessionDescription]:
        peer = role.peer
        async with self._changed:
            generation = self._require(session_id).generation
            await self._changed.wait_for(
                lambda: not self._is_current(session_id, generation)
                or self._records[session_id].description_for(peer) is not None
            )
            if not self._is_current(session_id, generation):
                return
            description = self._records[session_id].description_for(peer)
        assert description is not None
        yield description
        # Single shot: stay silent until the record goes away.
        async with self._changed:
            await self._changed.wait_for(
                lambda: not self._is_current(session_id, generation)
            )

    async def publish_candidate(
        self, session_id: str, role: Role, candidate: Candidate
    ) -> None:
        async with self._changed:
            record = self._records.get(session_id)
            if record is None:
                logger.debug(
                    "Dropping %s candidate for missing session %s", role.value, session_id
                )
                return
            record.candidates_for(role).append(candidate)
            self._changed.notify_all()

    async def subscribe_to_remote_candidates(
        self, session_id: str, role: Role
    ) -> AsyncIterator[Candidate]:
        peer = role.peer
        delivered = 0
        async with self._changed:
            generation = self._require(session_id).generation
        while True:
            async with self._changed:
                await self._changed.wait_for(
                    lambda: not self._is_current(session_id, generation)
                    or len(self._records[session_id].candidates_for(peer)) > delivered
                )
                if not self._is_current(session_id, generation):
                    return
                batch = list(self._records[session_id].candidates_for(peer)[delivered:])
            delivered += len(batch)
            for candidate in batch:
                yield candidate

    async def delete_session(self, session_id: str) -> None:
        async with self._changed:
            if self._records.pop(session_id, None) is None:
                logger.debug("Signaling record %s already absent", session_id)
                return
            self._changed.notify_all()
        logger.info("Signaling record %s deleted", session_id)


__all__ = [
    "AlreadyPublished",
    "InMemorySignalingChannel",
    "SessionFull",
    "SessionNotFound",
    "SignalingChannel",
    "SignalingError",
    "SignalingRecord",
]
