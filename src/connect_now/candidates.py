"""Candidate trickling between the local connection and the channel."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .media import PeerConnection
from .models import Candidate

logger = logging.getLogger(__name__)

Publisher = Callable[[Candidate], Awaitable[None]]


class CandidateBuffer:
    """Publish local candidates and apply remote ones in arrival order.

    Remote candidates that arrive before the remote description is set are
    held back and flushed, oldest first, by :meth:`flush` once it is. Every
    candidate is recorded and applied at most once.
    """

    def __init__(self, connection: PeerConnection, publish: Publisher) -> None:
        self._connection = connection
        self._publish = publish
        self._local: list[Candidate] = []
        self._pending: list[Candidate] = []
        self._applied: list[Candidate] = []
        self._seen_remote: set[Candidate] = set()
        self._publish_tasks: set[asyncio.Task[None]] = set()
        self._gathering_complete = asyncio.Event()

    @property
    def local_candidates(self) -> list[Candidate]:
        return list(self._local)

    @property
    def pending_remote_candidates(self) -> list[Candidate]:
        return list(self._pending)

    @property
    def applied_remote_candidates(self) -> list[Candidate]:
        return list(self._applied)

    @property
    def gathering_complete(self) -> bool:
        return self._gathering_complete.is_set()

    async def wait_for_gathering(self) -> list[Candidate]:
        await self._gathering_complete.wait()
        return self.local_candidates

    def add_local(self, candidate: Candidate) -> bool:
        """Record *candidate* and publish it without waiting for delivery."""

        if candidate in self._local:
            return False
        self._local.append(candidate)
        task = asyncio.ensure_future(self._publish(candidate))
        self._publish_tasks.add(task)
        task.add_done_callback(self._on_publish_done)
        return True

    def _on_publish_done(self, task: asyncio.Task[None]) -> None:
        self._publish_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Failed to publish local candidate: %s", exc)

    def mark_gathering_complete(self) -> bool:
        if self._gathering_complete.is_set():
            return False
        self._gathering_complete.set()
        logger.debug("Local gathering complete with %d candidates", len(self._local))
        return True

    async def add_remote(self, candidate: Candidate) -> bool:
        """Apply *candidate* now or hold it until a remote description exists."""

        if candidate in self._seen_remote:
            return False
        self._seen_remote.add(candidate)
        if self._connection.remote_description is None:
            self._pending.append(candidate)
            return True
        await self._apply(candidate)
        return True

    async def flush(self) -> int:
        """Apply every held candidate in arrival order; returns the count."""

        if self._connection.remote_description is None:
            return 0
        flushed = 0
        while self._pending:
            candidate = self._pending.pop(0)
            await self._apply(candidate)
            flushed += 1
        return flushed

    async def _apply(self, candidate: Candidate) -> None:
        try:
            await self._connection.add_remote_candidate(candidate)
        except Exception as exc:
            logger.warning("Remote candidate rejected by the connection: %s", exc)
            return
        self._applied.append(candidate)

    async def drain(self) -> None:
        """Wait for outstanding publications to finish."""

        if self._publish_tasks:
            await asyncio.gather(*list(self._publish_tasks), return_exceptions=True)

    def cancel(self) -> None:
        for task in list(self._publish_tasks):
            task.cancel()
        self._publish_tasks.clear()


__all__ = ["CandidateBuffer"]
