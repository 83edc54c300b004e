"""Media stack capabilities driven by the signaling core.

The core never touches codecs or network traversal itself; it only calls the
control-plane operations below and reacts to their events. The aiortc backend
is the production implementation, tests provide their own.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .config import IceSettings, MediaSettings
from .models import Candidate, ConnectivityState, SessionDescription

try:  # pragma: no cover - optional dependency
    from aiortc import RTCConfiguration as _RTCConfiguration
    from aiortc import RTCIceServer as _RTCIceServer
    from aiortc import RTCPeerConnection as _RTCPeerConnection
    from aiortc import RTCSessionDescription as _RTCSessionDescription
    from aiortc.contrib.media import MediaPlayer as _MediaPlayer
    from aiortc.sdp import candidate_from_sdp as _candidate_from_sdp
except ImportError as exc:  # pragma: no cover - handled at runtime
    _RTCConfiguration = None  # type: ignore[assignment]
    _RTCIceServer = None  # type: ignore[assignment]
    _RTCPeerConnection = None  # type: ignore[assignment]
    _RTCSessionDescription = None  # type: ignore[assignment]
    _MediaPlayer = None  # type: ignore[assignment]
    _candidate_from_sdp = None  # type: ignore[assignment]
    _AIORTC_IMPORT_ERROR = exc
else:  # pragma: no cover - executed when dependency is installed
    _AIORTC_IMPORT_ERROR = None


logger = logging.getLogger(__name__)

PEER_CONNECTION_EVENTS = frozenset(
    {"localcandidate", "gatheringcomplete", "track", "connectionstatechange"}
)


class MediaAcquisitionError(RuntimeError):
    """Raised when local capture cannot be started."""

    PERMISSION_DENIED = "permission-denied"
    NO_DEVICE = "no-device"

    def __init__(self, message: str, *, reason: str = NO_DEVICE) -> None:
        super().__init__(message)
        self.reason = reason


def _ensure_aiortc_available() -> None:
    """Raise a helpful error when the optional aiortc dependency is missing."""

    if _AIORTC_IMPORT_ERROR is not None:
        raise RuntimeError(
            "aiortc is required for peer connections. Install the 'aiortc' package to place calls."
        ) from _AIORTC_IMPORT_ERROR


@dataclass(frozen=True, slots=True)
class MediaConstraints:
    """Equivalent of ``getUserMedia({audio, video})``."""

    audio: bool = True
    video: bool = True

    @classmethod
    def from_settings(cls, settings: MediaSettings) -> "MediaConstraints":
        return cls(audio=settings.audio, video=settings.video)


class LocalMediaStream:
    """Tracks captured for one session; stopping is idempotent."""

    def __init__(self, tracks: Iterable[Any]) -> None:
        self._tracks = list(tracks)
        self._stopped = False

    @property
    def tracks(self) -> list[Any]:
        return list(self._tracks)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def tracks_of(self, kind: str) -> list[Any]:
        return [track for track in self._tracks if getattr(track, "kind", None) == kind]

    def is_enabled(self, kind: str) -> bool:
        tracks = self.tracks_of(kind)
        return bool(tracks) and all(getattr(track, "enabled", True) for track in tracks)

    def set_enabled(self, kind: str, enabled: bool) -> bool:
        """Switch every track of *kind*; returns ``False`` when none exist."""

        tracks = self.tracks_of(kind)
        for track in tracks:
            track.enabled = bool(enabled)
        return bool(tracks)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self._tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - logging only
                logger.debug("Ignoring error while stopping local track", exc_info=True)


class PeerConnection(ABC):
    """Control-plane view of one peer connection.

    Handlers are registered with :meth:`on`, either directly or as a
    decorator, for the events ``localcandidate``, ``gatheringcomplete``,
    ``track`` and ``connectionstatechange``.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., Any]]] = {}
        self._local_description: SessionDescription | None = None
        self._remote_description: SessionDescription | None = None

    def on(self, event: str, handler: Callable[..., Any] | None = None):
        if event not in PEER_CONNECTION_EVENTS:
            raise ValueError(f"Unknown peer connection event: {event!r}")

        def register(func: Callable[..., Any]) -> Callable[..., Any]:
            self._handlers.setdefault(event, []).append(func)
            return func

        if handler is not None:
            return register(handler)
        return register

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("Peer connection %s handler failed", event)

    @property
    def local_description(self) -> SessionDescription | None:
        return self._local_description

    @property
    def remote_description(self) -> SessionDescription | None:
        return self._remote_description

    @abstractmethod
    def add_local_track(self, track: Any) -> None:
        """Attach an outgoing track."""

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Generate an offer for the attached tracks."""

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Generate an answer to the remote offer."""

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply *description* locally and start gathering candidates."""

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the peer's description."""

    @abstractmethod
    async def add_remote_candidate(self, candidate: Candidate) -> None:
        """Apply one of the peer's candidates."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""


class MediaBackend(ABC):
    """Factory for local capture and peer connections."""

    @abstractmethod
    async def acquire_local_media(self, constraints: MediaConstraints) -> LocalMediaStream:
        """Start capture or raise :class:`MediaAcquisitionError`."""

    @abstractmethod
    def create_connection(self, ice: IceSettings) -> PeerConnection:
        """Return a new peer connection configured with *ice*."""


def candidates_from_sdp(sdp: str) -> list[Candidate]:
    """Extract the ``a=candidate`` lines of every media section of *sdp*."""

    candidates: list[Candidate] = []
    index = -1
    mid: str | None = None
    ufrag: str | None = None
    lines: list[str] = []

    def flush() -> None:
        for line in lines:
            candidates.append(
                Candidate(
                    candidate=line,
                    sdp_mid=mid,
                    sdp_mline_index=index,
                    username_fragment=ufrag,
                )
            )

    session_ufrag: str | None = None
    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            if index >= 0:
                flush()
            index += 1
            mid = None
            ufrag = session_ufrag
            lines = []
        elif line.startswith("a=ice-ufrag:"):
            if index < 0:
                session_ufrag = line[len("a=ice-ufrag:"):]
            else:
                ufrag = line[len("a=ice-ufrag:"):]
        elif index >= 0 and line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif index >= 0 and line.startswith("a=candidate:"):
            lines.append(line[2:])
    if index >= 0:
        flush()
    return candidates


def _rtc_configuration(ice: IceSettings):
    servers = [
        _RTCIceServer(
            urls=list(server.urls), username=server.username, credential=server.credential
        )
        for server in ice.servers
    ]
    return _RTCConfiguration(iceServers=servers)


class AiortcPeerConnection(PeerConnection):
    """:class:`PeerConnection` backed by :class:`aiortc.RTCPeerConnection`.

    aiortc gathers candidates while applying the local description and embeds
    them in its SDP, so they are announced individually right after
    :meth:`set_local_description` followed by ``gatheringcomplete``.
    """

    def __init__(self, ice: IceSettings) -> None:
        _ensure_aiortc_available()
        super().__init__()
        self._pc = _RTCPeerConnection(configuration=_rtc_configuration(ice))
        self._closed = False

        @self._pc.on("track")
        def _on_track(track) -> None:  # pragma: no cover - event driven
            logger.info("Remote %s track received", track.kind)
            self.emit("track", track)

        @self._pc.on("connectionstatechange")
        def _on_state_change() -> None:  # pragma: no cover - event driven
            try:
                state = ConnectivityState(self._pc.connectionState)
            except ValueError:
                logger.debug("Ignoring unknown connection state %s", self._pc.connectionState)
                return
            self.emit("connectionstatechange", state)

    @property
    def connection_state(self) -> ConnectivityState:
        return ConnectivityState(self._pc.connectionState)

    def add_local_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(kind=offer.type, body=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(kind=answer.type, body=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            _RTCSessionDescription(sdp=description.body, type=description.kind.value)
        )
        applied = self._pc.localDescription
        if applied is None:  # pragma: no cover - aiortc always sets one
            raise RuntimeError("Peer connection did not provide a local description")
        self._local_description = SessionDescription(kind=applied.type, body=applied.sdp)
        for candidate in candidates_from_sdp(applied.sdp):
            self.emit("localcandidate", candidate)
        self.emit("gatheringcomplete")

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            _RTCSessionDescription(sdp=description.body, type=description.kind.value)
        )
        self._remote_description = description

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        line = candidate.candidate
        if line.startswith("candidate:"):
            line = line.split(":", 1)[1]
        ice_candidate = _candidate_from_sdp(line)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()


def _open_player(file: str, format: str | None, kind: str):
    try:
        return _MediaPlayer(file, format=format)
    except PermissionError as exc:
        raise MediaAcquisitionError(
            f"Permission denied while opening {kind} device {file}: {exc}",
            reason=MediaAcquisitionError.PERMISSION_DENIED,
        ) from exc
    except (OSError, ValueError) as exc:
        raise MediaAcquisitionError(
            f"Unable to open {kind} device {file}: {exc}",
            reason=MediaAcquisitionError.NO_DEVICE,
        ) from exc


class AiortcMediaBackend(MediaBackend):
    """Capture through FFmpeg devices or synthetic sources and connect via aiortc."""

    def __init__(self, settings: MediaSettings) -> None:
        _ensure_aiortc_available()
        self._settings = settings

    @property
    def settings(self) -> MediaSettings:
        return self._settings

    async def acquire_local_media(self, constraints: MediaConstraints) -> LocalMediaStream:
        from .tracks import SyntheticVideoTrack, ToggleableTrack, create_silent_audio_track

        if not constraints.audio and not constraints.video:
            raise MediaAcquisitionError("No media requested", reason=MediaAcquisitionError.NO_DEVICE)
        settings = self._settings
        sources: list[Any] = []
        try:
            if settings.source == "synthetic":
                if constraints.video:
                    sources.append(SyntheticVideoTrack(settings.width, settings.height))
                if constraints.audio:
                    sources.append(create_silent_audio_track())
            else:
                if constraints.video:
                    player = await asyncio.to_thread(
                        _open_player, settings.video_device, settings.video_format, "video"
                    )
                    if player.video is None:
                        raise MediaAcquisitionError(
                            f"{settings.video_device} provides no video",
                            reason=MediaAcquisitionError.NO_DEVICE,
                        )
                    sources.append(player.video)
                if constraints.audio:
                    player = await asyncio.to_thread(
                        _open_player, settings.audio_device, settings.audio_format, "audio"
                    )
                    if player.audio is None:
                        raise MediaAcquisitionError(
                            f"{settings.audio_device} provides no audio",
                            reason=MediaAcquisitionError.NO_DEVICE,
                        )
                    sources.append(player.audio)
        except BaseException:
            for source in sources:
                source.stop()
            raise
        logger.info(
            "Acquired local media (%s source): %s",
            settings.source,
            ", ".join(source.kind for source in sources),
        )
        return LocalMediaStream(ToggleableTrack(source) for source in sources)

    def create_connection(self, ice: IceSettings) -> PeerConnection:
        return AiortcPeerConnection(ice)


__all__ = [
    "AiortcMediaBackend",
    "AiortcPeerConnection",
    "LocalMediaStream",
    "MediaAcquisitionError",
    "MediaBackend",
    "MediaConstraints",
    "PeerConnection",
    "candidates_from_sdp",
]
