"""Configuration management for Connect Now."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Sequence

DEFAULT_CONFIG_PATH = Path("data/config.json")

DEFAULT_STUN_URLS = (
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
)
DEFAULT_CANDIDATE_POOL_SIZE = 10

MEDIA_SOURCES: dict[str, str] = {
    "device": "Capture devices via FFmpeg (camera and microphone)",
    "synthetic": "Synthetic test pattern and silence",
}
DEFAULT_MEDIA_SOURCE = "device"

SIGNALING_BACKENDS: dict[str, str] = {
    "memory": "In-process record store",
    "firestore": "Cloud Firestore documents",
}
DEFAULT_SIGNALING_BACKEND = "memory"
DEFAULT_ROOMS_COLLECTION = "rooms"

_ICE_URL_SCHEMES = ("stun:", "stuns:", "turn:", "turns:")


@dataclass(frozen=True, slots=True)
class IceServer:
    """One STUN or TURN server entry."""

    urls: tuple[str, ...]
    username: str | None = None
    credential: str | None = None

    def __post_init__(self) -> None:
        urls = (self.urls,) if isinstance(self.urls, str) else tuple(self.urls)
        if not urls:
            raise ValueError("ICE server requires at least one URL")
        for url in urls:
            if not isinstance(url, str) or not url.startswith(_ICE_URL_SCHEMES):
                raise ValueError(f"Unsupported ICE server URL: {url!r}")
        if any(url.startswith(("turn:", "turns:")) for url in urls):
            if not self.username or not self.credential:
                raise ValueError("TURN servers require a username and credential")
        object.__setattr__(self, "urls", urls)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"urls": list(self.urls)}
        if self.username is not None:
            payload["username"] = self.username
        if self.credential is not None:
            payload["credential"] = self.credential
        return payload


@dataclass(frozen=True, slots=True)
class IceSettings:
    """Servers handed to every new peer connection."""

    servers: tuple[IceServer, ...] = (IceServer(urls=DEFAULT_STUN_URLS),)
    candidate_pool_size: int = DEFAULT_CANDIDATE_POOL_SIZE

    def __post_init__(self) -> None:
        object.__setattr__(self, "servers", tuple(self.servers))
        if self.candidate_pool_size < 0 or self.candidate_pool_size > 255:
            raise ValueError("Candidate pool size must be between 0 and 255")

    def to_dict(self) -> dict[str, object]:
        return {
            "servers": [server.to_dict() for server in self.servers],
            "candidate_pool_size": int(self.candidate_pool_size),
        }


@dataclass(frozen=True, slots=True)
class MediaSettings:
    """Which local media to capture and where it comes from."""

    audio: bool = True
    video: bool = True
    source: str = DEFAULT_MEDIA_SOURCE
    video_device: str = "/dev/video0"
    video_format: str | None = "v4l2"
    audio_device: str = "default"
    audio_format: str | None = "pulse"
    width: int = 640
    height: int = 480

    def __post_init__(self) -> None:
        if self.source not in MEDIA_SOURCES:
            raise ValueError(f"Unknown media source: {self.source!r}")
        if not self.audio and not self.video:
            raise ValueError("At least one of audio or video must be enabled")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Video dimensions must be positive integers")

    def to_dict(self) -> dict[str, object]:
        return {
            "audio": bool(self.audio),
            "video": bool(self.video),
            "source": self.source,
            "video_device": self.video_device,
            "video_format": self.video_format,
            "audio_device": self.audio_device,
            "audio_format": self.audio_format,
            "width": int(self.width),
            "height": int(self.height),
        }


@dataclass(frozen=True, slots=True)
class SignalingSettings:
    """Where the shared signaling records live."""

    backend: str = DEFAULT_SIGNALING_BACKEND
    collection: str = DEFAULT_ROOMS_COLLECTION
    credentials_path: str | None = None
    project_id: str | None = None

    def __post_init__(self) -> None:
        if self.backend not in SIGNALING_BACKENDS:
            raise ValueError(f"Unknown signaling backend: {self.backend!r}")
        if not self.collection or "/" in self.collection:
            raise ValueError("Collection name must be a non-empty single path segment")

    def to_dict(self) -> dict[str, object | None]:
        return {
            "backend": self.backend,
            "collection": self.collection,
            "credentials_path": self.credentials_path,
            "project_id": self.project_id,
        }


DEFAULT_ICE_SETTINGS = IceSettings()
DEFAULT_MEDIA_SETTINGS = MediaSettings()
DEFAULT_SIGNALING_SETTINGS = SignalingSettings()


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Expected a boolean value, got {value!r}")


def _parse_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Expected a string value, got {value!r}")
    cleaned = value.strip()
    return cleaned or None


def _parse_ice_server(value: Any) -> IceServer:
    if isinstance(value, str):
        return IceServer(urls=(value,))
    if not isinstance(value, Mapping):
        raise ValueError("ICE server entries must be URLs or objects")
    urls = value.get("urls")
    if isinstance(urls, str):
        urls = (urls,)
    elif isinstance(urls, Sequence):
        urls = tuple(urls)
    else:
        raise ValueError("ICE server entry requires 'urls'")
    return IceServer(
        urls=urls,
        username=_parse_optional_str(value.get("username")),
        credential=_parse_optional_str(value.get("credential")),
    )


def _parse_ice_settings(value: Any, *, default: IceSettings) -> IceSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("ICE settings must be an object")
    servers_payload = value.get("servers")
    if servers_payload is None:
        servers = default.servers
    elif isinstance(servers_payload, Sequence) and not isinstance(servers_payload, str):
        servers = tuple(_parse_ice_server(item) for item in servers_payload)
    else:
        raise ValueError("ICE servers must be a list")
    pool_raw = value.get("candidate_pool_size", default.candidate_pool_size)
    try:
        pool = int(pool_raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("Candidate pool size must be an integer") from exc
    return IceSettings(servers=servers, candidate_pool_size=pool)


def _parse_media_settings(value: Any, *, default: MediaSettings) -> MediaSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Media settings must be an object")
    source = value.get("source", default.source)
    if isinstance(source, str):
        source = source.strip().lower()
    try:
        width = int(value.get("width", default.width))
        height = int(value.get("height", default.height))
    except (TypeError, ValueError) as exc:
        raise ValueError("Video dimensions must be integers") from exc
    return MediaSettings(
        audio=_parse_bool(value.get("audio"), default=default.audio),
        video=_parse_bool(value.get("video"), default=default.video),
        source=source,
        video_device=_parse_optional_str(value.get("video_device")) or default.video_device,
        video_format=_parse_optional_str(value.get("video_format", default.video_format)),
        audio_device=_parse_optional_str(value.get("audio_device")) or default.audio_device,
        audio_format=_parse_optional_str(value.get("audio_format", default.audio_format)),
        width=width,
        height=height,
    )


def _parse_signaling_settings(
    value: Any, *, default: SignalingSettings
) -> SignalingSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Signaling settings must be an object")
    backend = value.get("backend", default.backend)
    if isinstance(backend, str):
        backend = backend.strip().lower()
    return SignalingSettings(
        backend=backend,
        collection=_parse_optional_str(value.get("collection")) or default.collection,
        credentials_path=_parse_optional_str(value.get("credentials_path")),
        project_id=_parse_optional_str(value.get("project_id")),
    )


def resolve_config_path(path: Path | str | None = None) -> Path:
    """Return *path*, the ``CONNECT_NOW_CONFIG`` override or the default."""

    if path is not None:
        return Path(path)
    override = os.environ.get("CONNECT_NOW_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_PATH


@dataclass(slots=True)
class _ConfigState:
    ice: IceSettings = DEFAULT_ICE_SETTINGS
    media: MediaSettings = DEFAULT_MEDIA_SETTINGS
    signaling: SignalingSettings = field(default=DEFAULT_SIGNALING_SETTINGS)


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str | None = None) -> None:
        self._path = resolve_config_path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        self._state = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> _ConfigState:
        state = _ConfigState()
        if self._path.exists():
            try:
                payload = json.loads(self._path.read_text())
                if not isinstance(payload, dict):
                    raise ValueError("Configuration file must contain a JSON object")
                state = _ConfigState(
                    ice=_parse_ice_settings(payload.get("ice"), default=DEFAULT_ICE_SETTINGS),
                    media=_parse_media_settings(
                        payload.get("media"), default=DEFAULT_MEDIA_SETTINGS
                    ),
                    signaling=_parse_signaling_settings(
                        payload.get("signaling"), default=DEFAULT_SIGNALING_SETTINGS
                    ),
                )
            except (OSError, ValueError) as exc:
                raise RuntimeError(f"Failed to load configuration: {exc}") from exc
        return self._apply_environment(state)

    @staticmethod
    def _apply_environment(state: _ConfigState) -> _ConfigState:
        backend = os.environ.get("CONNECT_NOW_SIGNALING")
        if backend:
            state.signaling = _parse_signaling_settings(
                {**state.signaling.to_dict(), "backend": backend},
                default=state.signaling,
            )
        source = os.environ.get("CONNECT_NOW_MEDIA_SOURCE")
        if source:
            state.media = _parse_media_settings(
                {**state.media.to_dict(), "source": source}, default=state.media
            )
        return state

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "ice": self._state.ice.to_dict(),
            "media": self._state.media.to_dict(),
            "signaling": self._state.signaling.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def get_ice_settings(self) -> IceSettings:
        with self._lock:
            return self._state.ice

    def set_ice_settings(self, data: Mapping[str, Any] | IceSettings) -> IceSettings:
        if isinstance(data, IceSettings):
            settings = data
        else:
            settings = _parse_ice_settings(data, default=DEFAULT_ICE_SETTINGS)
        with self._lock:
            self._state.ice = settings
            self._save()
        return settings

    def get_media_settings(self) -> MediaSettings:
        with self._lock:
            return self._state.media

    def set_media_settings(self, data: Mapping[str, Any] | MediaSettings) -> MediaSettings:
        if isinstance(data, MediaSettings):
            settings = data
        else:
            with self._lock:
                current = self._state.media
            settings = _parse_media_settings(data, default=current)
        with self._lock:
            self._state.media = settings
            self._save()
        return settings

    def get_signaling_settings(self) -> SignalingSettings:
        with self._lock:
            return self._state.signaling

    def set_signaling_settings(
        self, data: Mapping[str, Any] | SignalingSettings
    ) -> SignalingSettings:
        if isinstance(data, SignalingSettings):
            settings = data
        else:
            settings = _parse_signaling_settings(data, default=DEFAULT_SIGNALING_SETTINGS)
        with self._lock:
            self._state.signaling = settings
            self._save()
        return settings


__all__ = [
    "ConfigManager",
    "DEFAULT_CANDIDATE_POOL_SIZE",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_ICE_SETTINGS",
    "DEFAULT_MEDIA_SETTINGS",
    "DEFAULT_SIGNALING_SETTINGS",
    "DEFAULT_STUN_URLS",
    "IceServer",
    "IceSettings",
    "MEDIA_SOURCES",
    "MediaSettings",
    "SIGNALING_BACKENDS",
    "SignalingSettings",
    "resolve_config_path",
]
