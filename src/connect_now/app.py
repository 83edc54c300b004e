"""FastAPI application exposing call control."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import ConfigManager
from .event_log import CallEventLog
from .media import AiortcMediaBackend, MediaAcquisitionError, MediaBackend, MediaConstraints
from .manual import (
    LOCAL_TOKEN,
    REMOTE_TOKEN,
    MalformedRemoteInput,
    ManualSignalingChannel,
    parse_join_url,
)
from .models import SessionState
from .session import CallSession, SessionStateError
from .signaling import (
    InMemorySignalingChannel,
    SessionFull,
    SessionNotFound,
    SignalingChannel,
)
from .teardown import TeardownReport
from .version import APP_VERSION


class CallPayload(BaseModel):
    session_id: str | None = None
    create: bool = True


class MediaTogglePayload(BaseModel):
    microphone: bool | None = None
    camera: bool | None = None


class ManualCreatePayload(BaseModel):
    link_base: str | None = None


class ManualJoinPayload(BaseModel):
    offer: str | None = None
    url: str | None = None


class BlobPayload(BaseModel):
    blob: str


class IceSettingsPayload(BaseModel):
    servers: list[str | dict[str, object]] | None = None
    candidate_pool_size: int | None = None


class MediaSettingsPayload(BaseModel):
    audio: bool | None = None
    video: bool | None = None
    source: str | None = None
    video_device: str | None = None
    audio_device: str | None = None
    width: int | None = None
    height: int | None = None


@dataclass(slots=True)
class _ManualCall:
    session: CallSession
    channel: ManualSignalingChannel
    link_base: str | None = None


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SessionNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionFull):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, MediaAcquisitionError):
        return HTTPException(status_code=503, detail={"reason": exc.reason, "message": str(exc)})
    if isinstance(exc, MalformedRemoteInput):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (SessionStateError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


def create_app(
    config_path: Path | str | None = None,
    *,
    channel: SignalingChannel | None = None,
    media: MediaBackend | None = None,
    event_log: CallEventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="Connect Now", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(config_path)
    calls: dict[str, CallSession] = {}
    manual_calls: dict[str, _ManualCall] = {}
    shared_channel = channel

    app.state.config_manager = config_manager
    app.state.calls = calls
    app.state.manual_calls = manual_calls
    app.state.event_log = event_log

    def _get_channel() -> SignalingChannel:
        nonlocal shared_channel
        if shared_channel is None:
            settings = config_manager.get_signaling_settings()
            if settings.backend == "firestore":
                from .firestore import FirestoreSignalingChannel

                try:
                    shared_channel = FirestoreSignalingChannel.from_settings(settings)
                except RuntimeError as exc:
                    logger.error("Firestore signaling unavailable: %s", exc)
                    raise HTTPException(status_code=503, detail=str(exc)) from exc
            else:
                shared_channel = InMemorySignalingChannel()
            logger.info("Using %s signaling", settings.backend)
        return shared_channel

    def _get_media() -> MediaBackend:
        if media is not None:
            return media
        try:
            return AiortcMediaBackend(config_manager.get_media_settings())
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    def _forget(handle: str):
        def _on_terminated(report: TeardownReport) -> None:
            calls.pop(handle, None)
            manual_calls.pop(handle, None)
            logger.info("Call %s ended (%s)", handle, report.reason.value)

        return _on_terminated

    def _new_session(
        handle: str, session_id: str | None, signaling: SignalingChannel, *, create: bool
    ) -> CallSession:
        settings = config_manager.get_media_settings()
        return CallSession(
            session_id,
            signaling,
            _get_media(),
            ice=config_manager.get_ice_settings(),
            constraints=MediaConstraints.from_settings(settings),
            create=create,
            event_log=event_log,
            on_terminated=_forget(handle),
        )

    async def _start(session: CallSession) -> None:
        try:
            await session.start()
        except (SessionNotFound, SessionFull, MediaAcquisitionError, ValueError) as exc:
            raise _http_error(exc) from exc
        except RuntimeError as exc:
            logger.exception("Call setup failed")
            raise _http_error(exc) from exc

    def _call(handle: str) -> CallSession:
        session = calls.get(handle)
        if session is None:
            raise HTTPException(status_code=404, detail="Call not found")
        return session

    def _manual(handle: str) -> _ManualCall:
        entry = manual_calls.get(handle)
        if entry is None:
            raise HTTPException(status_code=404, detail="Manual call not found")
        return entry

    def _describe(handle: str, session: CallSession) -> dict[str, object | None]:
        return {"handle": handle, **session.snapshot()}

    def _describe_manual(handle: str, entry: _ManualCall) -> dict[str, object | None]:
        payload = _describe(handle, entry.session)
        payload["token"] = entry.channel.token
        payload["description"] = entry.channel.export_description()
        payload["candidates"] = entry.channel.export_candidates()
        payload["join_url"] = (
            entry.channel.export_join_url(entry.link_base) if entry.link_base else None
        )
        return payload

    def _apply_media(session: CallSession, payload: MediaTogglePayload) -> None:
        if payload.microphone is not None:
            session.set_microphone_enabled(payload.microphone)
        if payload.camera is not None:
            session.set_camera_enabled(payload.camera)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        sessions = [*calls.values(), *(entry.session for entry in manual_calls.values())]
        for session in sessions:
            await session.dispose()
        calls.clear()
        manual_calls.clear()
        if shared_channel is not None:
            await shared_channel.close()

    # ------------------------------------------------------------------
    # Store-backed calls
    # ------------------------------------------------------------------
    @app.post("/api/calls")
    async def open_call(payload: CallPayload) -> dict[str, object | None]:
        if not payload.create and not payload.session_id:
            raise HTTPException(status_code=400, detail="A session identifier is required to join")
        handle = uuid.uuid4().hex[:12]
        session = _new_session(handle, payload.session_id, _get_channel(), create=payload.create)
        await _start(session)
        if not session.closed:
            calls[handle] = session
        return _describe(handle, session)

    @app.get("/api/calls")
    async def list_calls() -> dict[str, object]:
        return {"calls": [_describe(handle, session) for handle, session in calls.items()]}

    @app.get("/api/calls/{handle}")
    async def get_call(handle: str) -> dict[str, object | None]:
        return _describe(handle, _call(handle))

    @app.post("/api/calls/{handle}/media")
    async def toggle_call_media(handle: str, payload: MediaTogglePayload) -> dict[str, object | None]:
        session = _call(handle)
        _apply_media(session, payload)
        return _describe(handle, session)

    @app.delete("/api/calls/{handle}")
    async def hang_up(handle: str) -> dict[str, object | None]:
        session = _call(handle)
        report = await session.hangup()
        calls.pop(handle, None)
        return {**_describe(handle, session), "teardown": report.to_dict()}

    # ------------------------------------------------------------------
    # Manual exchange
    # ------------------------------------------------------------------
    @app.post("/api/manual")
    async def manual_create(payload: ManualCreatePayload) -> dict[str, object | None]:
        signaling = ManualSignalingChannel(LOCAL_TOKEN)
        handle = uuid.uuid4().hex[:12]
        session = _new_session(handle, LOCAL_TOKEN, signaling, create=True)
        await _start(session)
        entry = _ManualCall(session=session, channel=signaling, link_base=payload.link_base)
        if not session.closed:
            manual_calls[handle] = entry
        return _describe_manual(handle, entry)

    @app.post("/api/manual/join")
    async def manual_join(payload: ManualJoinPayload) -> dict[str, object | None]:
        signaling = ManualSignalingChannel(REMOTE_TOKEN)
        try:
            offer = payload.offer
            if payload.url:
                _token, offer = parse_join_url(payload.url)
            if not offer:
                raise MalformedRemoteInput("An offer or join link is required")
            signaling.apply_pasted_offer(offer)
        except MalformedRemoteInput as exc:
            raise _http_error(exc) from exc
        handle = uuid.uuid4().hex[:12]
        session = _new_session(handle, REMOTE_TOKEN, signaling, create=False)
        await _start(session)
        await session.wait_for_state(SessionState.CONNECTING, SessionState.CONNECTED)
        entry = _ManualCall(session=session, channel=signaling)
        if not session.closed:
            manual_calls[handle] = entry
        return _describe_manual(handle, entry)

    @app.get("/api/manual/{handle}")
    async def manual_status(handle: str) -> dict[str, object | None]:
        return _describe_manual(handle, _manual(handle))

    @app.post("/api/manual/{handle}/answer")
    async def manual_answer(handle: str, payload: BlobPayload) -> dict[str, object | None]:
        entry = _manual(handle)
        try:
            entry.channel.apply_pasted_answer(payload.blob)
        except MalformedRemoteInput as exc:
            raise _http_error(exc) from exc
        return _describe_manual(handle, entry)

    @app.post("/api/manual/{handle}/candidates")
    async def manual_candidates(handle: str, payload: BlobPayload) -> dict[str, object | None]:
        entry = _manual(handle)
        try:
            added = entry.channel.apply_pasted_candidates(payload.blob)
        except MalformedRemoteInput as exc:
            raise _http_error(exc) from exc
        return {**_describe_manual(handle, entry), "added": added}

    @app.post("/api/manual/{handle}/media")
    async def toggle_manual_media(handle: str, payload: MediaTogglePayload) -> dict[str, object | None]:
        entry = _manual(handle)
        _apply_media(entry.session, payload)
        return _describe_manual(handle, entry)

    @app.delete("/api/manual/{handle}")
    async def manual_hang_up(handle: str) -> dict[str, object | None]:
        entry = _manual(handle)
        report = await entry.session.hangup()
        manual_calls.pop(handle, None)
        return {**_describe(handle, entry.session), "teardown": report.to_dict()}

    # ------------------------------------------------------------------
    # Configuration and diagnostics
    # ------------------------------------------------------------------
    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        return {
            "ice": config_manager.get_ice_settings().to_dict(),
            "media": config_manager.get_media_settings().to_dict(),
            "signaling": config_manager.get_signaling_settings().to_dict(),
        }

    @app.post("/api/config/ice")
    async def update_ice(payload: IceSettingsPayload) -> dict[str, object]:
        data = {key: value for key, value in payload.model_dump().items() if value is not None}
        try:
            settings = config_manager.set_ice_settings(data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return settings.to_dict()

    @app.post("/api/config/media")
    async def update_media(payload: MediaSettingsPayload) -> dict[str, object]:
        data = {key: value for key, value in payload.model_dump().items() if value is not None}
        try:
            settings = config_manager.set_media_settings(data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return settings.to_dict()

    @app.get("/api/events")
    async def get_events(limit: int = 100, session: str | None = None) -> dict[str, object]:
        if event_log is None:
            return {"events": []}
        entries = event_log.tail(limit, session_id=session)
        return {"events": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["APP_VERSION", "create_app"]
