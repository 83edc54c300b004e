"""Persistent record of call lifecycle events for troubleshooting."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LOG_PATH = Path("data/call_events.jsonl")


@dataclass(slots=True)
class CallEvent:
    """One lifecycle step observed for a session."""

    timestamp: float
    session_id: str
    event: str
    message: str
    role: str | None = None
    state: str | None = None
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "session": self.session_id,
            "event": self.event,
            "message": self.message,
        }
        if self.role is not None:
            payload["role"] = self.role
        if self.state is not None:
            payload["state"] = self.state
        if self.details:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "CallEvent | None":
        if not isinstance(payload, dict):
            return None
        session_id = payload.get("session")
        event = payload.get("event")
        message = payload.get("message")
        if not all(isinstance(value, str) for value in (session_id, event, message)):
            return None
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        role = payload.get("role")
        state = payload.get("state")
        details = payload.get("details")
        return cls(
            timestamp=timestamp,
            session_id=session_id,
            event=event,
            message=message,
            role=role if isinstance(role, str) else None,
            state=state if isinstance(state, str) else None,
            details=details if isinstance(details, dict) else None,
        )


class CallEventLog:
    """Append-only JSONL log of call events with an in-memory tail.

    Passing ``path=None`` keeps events in memory only. Write failures are
    logged and never interrupt the call that produced the event.
    """

    def __init__(
        self,
        path: Path | str | None = DEFAULT_EVENT_LOG_PATH,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[CallEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare call event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        session_id: str,
        event: str,
        message: str,
        *,
        role: str | None = None,
        state: str | None = None,
        details: dict[str, object | None] | None = None,
    ) -> CallEvent:
        cleaned = {k: v for k, v in (details or {}).items() if v is not None}
        entry = CallEvent(
            timestamp=time.time(),
            session_id=session_id,
            event=event,
            message=message,
            role=role,
            state=state,
            details=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._write(entry)
        return entry

    def tail(
        self, limit: int | None = None, *, session_id: str | None = None
    ) -> list[CallEvent]:
        """Return the most recent events, optionally for one session only."""

        with self._lock:
            entries: Iterable[CallEvent] = list(self._entries)
        if session_id is not None:
            entries = [entry for entry in entries if entry.session_id == session_id]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load call event log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                entry = CallEvent.from_dict(json.loads(line))
            except ValueError:
                continue
            if entry is not None:
                self._entries.append(entry)

    def _write(self, entry: CallEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist call event: %s", exc)


__all__ = ["CallEvent", "CallEventLog", "DEFAULT_EVENT_LOG_PATH"]
