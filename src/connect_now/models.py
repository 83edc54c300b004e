"""Value types shared by the signaling core."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class Role(str, Enum):
    """Which side of the call a participant plays."""

    CALLER = "caller"
    CALLEE = "callee"
    UNRESOLVED = "unresolved"

    @property
    def peer(self) -> "Role":
        if self is Role.CALLER:
            return Role.CALLEE
        if self is Role.CALLEE:
            return Role.CALLER
        raise ValueError("An unresolved role has no peer")

    @property
    def candidates_key(self) -> str:
        """Name of the candidate log this role appends to."""

        if self is Role.UNRESOLVED:
            raise ValueError("An unresolved role owns no candidate log")
        return f"{self.value}Candidates"


class DescriptionKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"

    @property
    def publisher(self) -> Role:
        return Role.CALLER if self is DescriptionKind.OFFER else Role.CALLEE


class SessionState(str, Enum):
    """Lifecycle states of a single call attempt."""

    IDLE = "idle"
    ROLE_RESOLVING = "role-resolving"
    ACQUIRING_MEDIA = "acquiring-media"
    CREATING_OFFER = "creating-offer"
    AWAITING_OFFER = "awaiting-offer"
    AWAITING_ANSWER = "awaiting-answer"
    CREATING_ANSWER = "creating-answer"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAILED)


# Forward edges only; CLOSED and FAILED are reachable from every
# non-terminal state and are handled separately.
SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.ROLE_RESOLVING}),
    SessionState.ROLE_RESOLVING: frozenset({SessionState.ACQUIRING_MEDIA}),
    SessionState.ACQUIRING_MEDIA: frozenset(
        {SessionState.CREATING_OFFER, SessionState.AWAITING_OFFER}
    ),
    SessionState.CREATING_OFFER: frozenset({SessionState.AWAITING_ANSWER}),
    SessionState.AWAITING_OFFER: frozenset({SessionState.CREATING_ANSWER}),
    SessionState.AWAITING_ANSWER: frozenset({SessionState.CONNECTING}),
    SessionState.CREATING_ANSWER: frozenset({SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset({SessionState.CONNECTED}),
    SessionState.CONNECTED: frozenset(),
    SessionState.CLOSED: frozenset(),
    SessionState.FAILED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    """Return ``True`` when *current* may move to *target*."""

    if current.terminal:
        return False
    if target.terminal:
        return True
    return target in SESSION_TRANSITIONS[current]


class ConnectivityState(str, Enum):
    """Connection states reported by the media stack."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def lost(self) -> bool:
        return self in (ConnectivityState.DISCONNECTED, ConnectivityState.FAILED)


class TerminationReason(str, Enum):
    HANGUP = "hangup"
    CONNECTIVITY_LOST = "connectivity-lost"
    FAILURE = "failure"
    DISPOSED = "disposed"


@dataclass(frozen=True, slots=True)
class SessionDescription:
    """An SDP-bearing description of either kind."""

    kind: DescriptionKind
    body: str

    def __post_init__(self) -> None:
        try:
            kind = DescriptionKind(self.kind)
        except ValueError as exc:
            raise ValueError(f"Unknown description type: {self.kind!r}") from exc
        if not isinstance(self.body, str) or not self.body:
            raise ValueError("Description body must be a non-empty string")
        object.__setattr__(self, "kind", kind)

    def to_dict(self) -> dict[str, str]:
        return {"type": self.kind.value, "sdp": self.body}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionDescription":
        if not isinstance(payload, Mapping):
            raise ValueError("Description payload must be a mapping")
        return cls(kind=payload.get("type"), body=payload.get("sdp"))  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class Candidate:
    """One ICE candidate, carried as an opaque bundle of wire fields."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None
    username_fragment: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.candidate, str) or not self.candidate.strip():
            raise ValueError("Candidate line must be a non-empty string")
        if self.sdp_mid is not None and not isinstance(self.sdp_mid, str):
            raise ValueError("sdpMid must be a string")
        if self.username_fragment is not None and not isinstance(self.username_fragment, str):
            raise ValueError("usernameFragment must be a string")
        if isinstance(self.sdp_mline_index, bool):
            raise ValueError("sdpMLineIndex must be an integer")
        if self.sdp_mline_index is not None:
            try:
                index = int(self.sdp_mline_index)
            except (TypeError, ValueError) as exc:
                raise ValueError("sdpMLineIndex must be an integer") from exc
            if index < 0:
                raise ValueError("sdpMLineIndex must not be negative")
            object.__setattr__(self, "sdp_mline_index", index)

    def to_dict(self) -> dict[str, object | None]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
            "usernameFragment": self.username_fragment,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Candidate":
        if not isinstance(payload, Mapping):
            raise ValueError("Candidate payload must be a mapping")
        return cls(
            candidate=payload.get("candidate"),  # type: ignore[arg-type]
            sdp_mid=payload.get("sdpMid"),
            sdp_mline_index=payload.get("sdpMLineIndex"),
            username_fragment=payload.get("usernameFragment"),
        )


__all__ = [
    "Candidate",
    "ConnectivityState",
    "DescriptionKind",
    "Role",
    "SESSION_TRANSITIONS",
    "SessionDescription",
    "SessionState",
    "TerminationReason",
    "can_transition",
]
