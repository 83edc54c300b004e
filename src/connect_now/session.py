"""State machine for one call attempt."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from .candidates import CandidateBuffer
from .config import IceSettings
from .event_log import CallEventLog
from .media import LocalMediaStream, MediaBackend, MediaConstraints, PeerConnection
from .models import (
    Candidate,
    ConnectivityState,
    DescriptionKind,
    Role,
    SessionDescription,
    SessionState,
    TerminationReason,
    can_transition,
)
from .roles import RoleResolver
from .signaling import SignalingChannel
from .teardown import TeardownCoordinator, TeardownReport

logger = logging.getLogger(__name__)

# Queue event kinds.
_REMOTE_DESCRIPTION = "remote-description"
_REMOTE_CANDIDATE = "remote-candidate"
_LOCAL_CANDIDATE = "local-candidate"
_GATHERING_COMPLETE = "gathering-complete"
_REMOTE_TRACK = "remote-track"
_CONNECTIVITY = "connectivity"


class SessionStateError(RuntimeError):
    """Raised on an illegal state change or role reassignment."""


class ConnectivityLost(RuntimeError):
    """Recorded as the session error when the media path goes away."""

    def __init__(self, state: ConnectivityState) -> None:
        super().__init__(f"Peer connectivity lost ({state.value})")
        self.state = state


def _status_for(state: SessionState) -> str:
    if state is SessionState.IDLE:
        return "Initializing..."
    if state in (SessionState.ROLE_RESOLVING, SessionState.ACQUIRING_MEDIA):
        return "Preparing call..."
    if state is SessionState.CREATING_OFFER:
        return "Creating room..."
    if state is SessionState.AWAITING_ANSWER:
        return "Waiting for a peer to join..."
    if state in (SessionState.AWAITING_OFFER, SessionState.CREATING_ANSWER):
        return "Joining room..."
    if state is SessionState.CONNECTING:
        return "Connecting..."
    if state is SessionState.CONNECTED:
        return "Connected"
    if state is SessionState.CLOSED:
        return "Call ended"
    return "Call failed"


class CallSession:
    """Bring one participant from nothing to a connected call and back.

    ``start()`` resolves the role, acquires local media, creates the
    connection and performs this role's half of the description exchange.
    Everything after that is driven by events: remote descriptions and
    candidates from the channel plus candidate, track and connectivity
    callbacks from the media stack are queued and handled one at a time by a
    single consumer task. Setup steps and event handlers hold the session
    lock, so state is never mutated by two of them at once. Teardown stops
    them first and then takes the same lock for the final state change.

    Teardown is reachable from every state through :meth:`hangup`,
    :meth:`dispose`, the async context manager, connectivity loss or a setup
    failure, and runs exactly once.
    """

    def __init__(
        self,
        session_id: str | None,
        channel: SignalingChannel,
        media: MediaBackend,
        *,
        ice: IceSettings | None = None,
        constraints: MediaConstraints | None = None,
        create: bool = False,
        event_log: CallEventLog | None = None,
        on_terminated: Callable[[TeardownReport], Any] | None = None,
    ) -> None:
        if session_id is None and not create:
            raise ValueError("A session identifier is required to join a session")
        self._session_id = session_id or ""
        self._channel = channel
        self._media = media
        self._ice = ice if ice is not None else IceSettings()
        self._constraints = constraints if constraints is not None else MediaConstraints()
        self._create = create
        self._event_log = event_log
        self._resolver = RoleResolver(channel)

        self._role = Role.UNRESOLVED
        self._state = SessionState.IDLE
        self._state_changed = asyncio.Event()
        self._error: BaseException | None = None
        self._connectivity = ConnectivityState.NEW
        self._local_stream: LocalMediaStream | None = None
        self._connection: PeerConnection | None = None
        self._buffer: CandidateBuffer | None = None
        self._remote_tracks: list[Any] = []
        self._answers_applied = 0

        self._lock = asyncio.Lock()
        self._events: asyncio.Queue[tuple[str, Any] | None] = asyncio.Queue()
        self._setup_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._pumps: set[asyncio.Task[None]] = set()

        self._teardown = TeardownCoordinator(
            self._session_id,
            stop_tasks=self._stop_tasks,
            stop_media=self._stop_media,
            close_connection=self._close_connection,
            purge_record=self._purge_record,
            on_started=self._on_teardown_started,
            on_complete=on_terminated,
        )

    # ------------------------------------------------------------------
    # Observable attributes
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def role(self) -> Role:
        return self._role

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return _status_for(self._state)

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def connectivity(self) -> ConnectivityState:
        return self._connectivity

    @property
    def termination_reason(self) -> TerminationReason | None:
        return self._teardown.reason

    @property
    def closed(self) -> bool:
        return self._teardown.done

    @property
    def connection(self) -> PeerConnection | None:
        return self._connection

    @property
    def local_stream(self) -> LocalMediaStream | None:
        return self._local_stream

    @property
    def local_description(self) -> SessionDescription | None:
        return self._connection.local_description if self._connection else None

    @property
    def remote_description(self) -> SessionDescription | None:
        return self._connection.remote_description if self._connection else None

    @property
    def local_candidates(self) -> list[Candidate]:
        return self._buffer.local_candidates if self._buffer else []

    @property
    def pending_remote_candidates(self) -> list[Candidate]:
        return self._buffer.pending_remote_candidates if self._buffer else []

    @property
    def applied_remote_candidates(self) -> list[Candidate]:
        return self._buffer.applied_remote_candidates if self._buffer else []

    @property
    def gathering_complete(self) -> bool:
        return self._buffer.gathering_complete if self._buffer else False

    @property
    def remote_tracks(self) -> list[Any]:
        return list(self._remote_tracks)

    @property
    def answers_applied(self) -> int:
        return self._answers_applied

    @property
    def microphone_enabled(self) -> bool:
        return self._local_stream is not None and self._local_stream.is_enabled("audio")

    @property
    def camera_enabled(self) -> bool:
        return self._local_stream is not None and self._local_stream.is_enabled("video")

    def snapshot(self) -> dict[str, object | None]:
        return {
            "session_id": self._session_id,
            "role": self._role.value,
            "state": self._state.value,
            "status": self.status,
            "connectivity": self._connectivity.value,
            "microphone_enabled": self.microphone_enabled,
            "camera_enabled": self.camera_enabled,
            "local_candidates": len(self.local_candidates),
            "pending_remote_candidates": len(self.pending_remote_candidates),
            "remote_tracks": len(self._remote_tracks),
            "error": str(self._error) if self._error is not None else None,
            "termination_reason": (
                self.termination_reason.value if self.termination_reason else None
            ),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Run setup until this role's half of the exchange is published.

        Setup failures (missing or full session, media acquisition) tear the
        session down and are re-raised. A teardown that interrupts setup is
        awaited and this returns normally.
        """

        if self._setup_task is not None:
            raise SessionStateError("Session already started")
        self._setup_task = asyncio.ensure_future(self._setup())
        try:
            await self._setup_task
        except asyncio.CancelledError:
            if self._teardown.started:
                await self._teardown.wait()
                return
            raise
        except Exception as exc:
            if self._teardown.started:
                logger.debug("Session %s: setup interrupted by teardown: %s", self._session_id, exc)
                await self._teardown.wait()
                return
            self._error = exc
            await self.terminate(TerminationReason.FAILURE)
            raise

    async def wait_for_state(self, *states: SessionState) -> SessionState:
        """Wait until one of *states* or a terminal state is reached."""

        while self._state not in states and not self._state.terminal:
            await self._state_changed.wait()
        return self._state

    async def terminate(
        self, reason: TerminationReason | str = TerminationReason.HANGUP
    ) -> TeardownReport:
        return await self._teardown.terminate(reason)

    async def hangup(self) -> TeardownReport:
        return await self.terminate(TerminationReason.HANGUP)

    async def dispose(self) -> TeardownReport:
        return await self.terminate(TerminationReason.DISPOSED)

    async def wait_closed(self) -> TeardownReport:
        return await self._teardown.wait()

    async def __aenter__(self) -> "CallSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # ------------------------------------------------------------------
    # Local media controls
    # ------------------------------------------------------------------
    def set_microphone_enabled(self, enabled: bool) -> bool:
        return self._set_media_enabled("audio", enabled)

    def set_camera_enabled(self, enabled: bool) -> bool:
        return self._set_media_enabled("video", enabled)

    def _set_media_enabled(self, kind: str, enabled: bool) -> bool:
        if self._local_stream is None or self._local_stream.stopped:
            return False
        changed = self._local_stream.set_enabled(kind, enabled)
        if changed:
            self._record("media", f"{kind} {'enabled' if enabled else 'disabled'}")
        return changed

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------
    def _transition(self, target: SessionState) -> None:
        if not can_transition(self._state, target):
            raise SessionStateError(
                f"Illegal transition {self._state.value} -> {target.value}"
            )
        previous = self._state
        self._state = target
        event, self._state_changed = self._state_changed, asyncio.Event()
        event.set()
        logger.info(
            "Session %s (%s): %s -> %s",
            self._session_id,
            self._role.value,
            previous.value,
            target.value,
        )
        self._record("state", self.status)

    def _assign_role(self, role: Role) -> None:
        if self._role is not Role.UNRESOLVED:
            raise SessionStateError(f"Role already resolved as {self._role.value}")
        self._role = role

    def _record(self, event: str, message: str, **details: object) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            self._session_id,
            event,
            message,
            role=self._role.value,
            state=self._state.value,
            details=details or None,
        )

    def _ensure_active(self) -> None:
        if self._teardown.started:
            raise asyncio.CancelledError()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    async def _setup(self) -> None:
        async with self._lock:
            self._ensure_active()
            if self._create:
                self._session_id = await self._channel.create_session(self._session_id or None)
                self._teardown.session_id = self._session_id
            self._transition(SessionState.ROLE_RESOLVING)
            self._assign_role(await self._resolver.resolve(self._session_id))
            self._ensure_active()

            self._transition(SessionState.ACQUIRING_MEDIA)
            self._local_stream = await self._acquire_media()
            self._ensure_active()

            connection = self._media.create_connection(self._ice)
            self._connection = connection
            for track in self._local_stream.tracks:
                connection.add_local_track(track)
            self._wire(connection)
            self._buffer = CandidateBuffer(connection, self._publish_local_candidate)
            self._consumer_task = asyncio.ensure_future(self._consume())

            if self._role is Role.CALLER:
                self._transition(SessionState.CREATING_OFFER)
                offer = await connection.create_offer()
                await connection.set_local_description(offer)
                await self._channel.publish_description(
                    self._session_id, connection.local_description or offer
                )
                self._transition(SessionState.AWAITING_ANSWER)
            else:
                self._transition(SessionState.AWAITING_OFFER)
            self._start_pump(
                self._channel.subscribe_to_remote_candidates(self._session_id, self._role),
                _REMOTE_CANDIDATE,
            )
            self._start_pump(
                self._channel.subscribe_to_remote_description(self._session_id, self._role),
                _REMOTE_DESCRIPTION,
            )

    async def _acquire_media(self) -> LocalMediaStream:
        acquisition = asyncio.ensure_future(
            self._media.acquire_local_media(self._constraints)
        )
        try:
            return await asyncio.shield(acquisition)
        except asyncio.CancelledError:
            acquisition.add_done_callback(_release_late_stream)
            raise

    def _wire(self, connection: PeerConnection) -> None:
        put = self._events.put_nowait
        connection.on("localcandidate", lambda candidate: put((_LOCAL_CANDIDATE, candidate)))
        connection.on("gatheringcomplete", lambda: put((_GATHERING_COMPLETE, None)))
        connection.on("track", lambda track: put((_REMOTE_TRACK, track)))
        connection.on("connectionstatechange", lambda state: put((_CONNECTIVITY, state)))

    def _start_pump(self, stream: AsyncIterator[Any], kind: str) -> None:
        task = asyncio.ensure_future(self._pump(stream, kind))
        self._pumps.add(task)
        task.add_done_callback(self._pumps.discard)

    async def _pump(self, stream: AsyncIterator[Any], kind: str) -> None:
        try:
            async for item in stream:
                self._events.put_nowait((kind, item))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Session %s: %s stream failed", self._session_id, kind)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        logger.debug("Session %s: %s stream ended", self._session_id, kind)

    async def _publish_local_candidate(self, candidate: Candidate) -> None:
        await self._channel.publish_candidate(self._session_id, self._role, candidate)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    async def _consume(self) -> None:
        while True:
            item = await self._events.get()
            if item is None:
                return
            kind, payload = item
            async with self._lock:
                if self._state.terminal:
                    continue
                try:
                    await self._handle(kind, payload)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if self._teardown.started:
                        logger.debug("Session %s: %s interrupted by teardown", self._session_id, kind)
                        return
                    logger.exception("Session %s: failed to handle %s", self._session_id, kind)
                    self._error = exc
                    self._transition(SessionState.FAILED)
                    self._spawn_terminate(TerminationReason.FAILURE)
                    return

    async def _handle(self, kind: str, payload: Any) -> None:
        if kind == _REMOTE_DESCRIPTION:
            await self._on_remote_description(payload)
        elif kind == _REMOTE_CANDIDATE:
            assert self._buffer is not None
            await self._buffer.add_remote(payload)
        elif kind == _LOCAL_CANDIDATE:
            assert self._buffer is not None
            self._buffer.add_local(payload)
        elif kind == _GATHERING_COMPLETE:
            assert self._buffer is not None
            if self._buffer.mark_gathering_complete():
                await self._buffer.drain()
                await self._channel.local_gathering_complete(self._session_id, self._role)
        elif kind == _REMOTE_TRACK:
            self._remote_tracks.append(payload)
            self._record("track", "Remote track received", kind=getattr(payload, "kind", None))
            self._maybe_connected()
        elif kind == _CONNECTIVITY:
            self._on_connectivity(payload)

    async def _on_remote_description(self, description: SessionDescription) -> None:
        connection = self._connection
        assert connection is not None
        if connection.remote_description is not None:
            logger.debug(
                "Session %s: ignoring repeated %s notification",
                self._session_id,
                description.kind.value,
            )
            return
        if self._role is Role.CALLER and description.kind is DescriptionKind.ANSWER:
            if self._state is not SessionState.AWAITING_ANSWER:
                logger.debug("Session %s: answer arrived in state %s", self._session_id, self._state.value)
                return
            await connection.set_remote_description(description)
            self._answers_applied += 1
            await self._flush_candidates()
            self._transition(SessionState.CONNECTING)
            self._maybe_connected()
        elif self._role is Role.CALLEE and description.kind is DescriptionKind.OFFER:
            if self._state is not SessionState.AWAITING_OFFER:
                return
            self._transition(SessionState.CREATING_ANSWER)
            await connection.set_remote_description(description)
            await self._flush_candidates()
            answer = await connection.create_answer()
            await connection.set_local_description(answer)
            await self._channel.publish_description(
                self._session_id, connection.local_description or answer
            )
            self._transition(SessionState.CONNECTING)
            self._maybe_connected()
        else:
            logger.warning(
                "Session %s: %s cannot accept a remote %s",
                self._session_id,
                self._role.value,
                description.kind.value,
            )

    async def _flush_candidates(self) -> None:
        assert self._buffer is not None
        flushed = await self._buffer.flush()
        if flushed:
            logger.debug("Session %s: applied %d early candidates", self._session_id, flushed)

    def _maybe_connected(self) -> None:
        if self._state is SessionState.CONNECTING and self._remote_tracks:
            self._transition(SessionState.CONNECTED)

    def _on_connectivity(self, state: ConnectivityState) -> None:
        state = ConnectivityState(state)
        self._connectivity = state
        self._record("connectivity", f"Connectivity {state.value}")
        if not state.lost:
            return
        self._error = ConnectivityLost(state)
        logger.warning("Session %s: %s", self._session_id, self._error)
        self._transition(SessionState.FAILED)
        self._spawn_terminate(TerminationReason.CONNECTIVITY_LOST)

    def _spawn_terminate(self, reason: TerminationReason) -> None:
        # Not awaited here: the teardown stops this consumer.
        self._teardown.begin(reason)

    # ------------------------------------------------------------------
    # Teardown steps
    # ------------------------------------------------------------------
    def _on_teardown_started(self, reason: TerminationReason) -> None:
        self._record("teardown", f"Teardown started ({reason.value})")

    async def _stop_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._setup_task, self._consumer_task, *self._pumps)
            if task is not None and task is not current and not task.done()
        ]
        try:
            for task in tasks:
                task.cancel()
            if self._buffer is not None:
                self._buffer.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            # Setup and handlers have stopped; the lock is free.
            async with self._lock:
                self._enter_terminal_state()

    def _enter_terminal_state(self) -> None:
        if self._state.terminal:
            return
        reason = self._teardown.reason
        if reason in (TerminationReason.HANGUP, TerminationReason.DISPOSED):
            self._transition(SessionState.CLOSED)
        else:
            self._transition(SessionState.FAILED)

    def _stop_media(self) -> None:
        if self._local_stream is not None:
            self._local_stream.stop()

    async def _close_connection(self) -> None:
        if self._connection is not None:
            await self._connection.close()

    async def _purge_record(self) -> None:
        if self._role is Role.UNRESOLVED:
            return
        await self._channel.delete_session(self._session_id)


def _release_late_stream(task: asyncio.Future[LocalMediaStream]) -> None:
    if task.cancelled() or task.exception() is not None:
        return
    task.result().stop()


__all__ = ["CallSession", "ConnectivityLost", "SessionStateError"]
