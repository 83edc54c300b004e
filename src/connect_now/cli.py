"""Command line entry points for Connect Now."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from .config import ConfigManager
from .event_log import CallEventLog
from .manual import (
    LOCAL_TOKEN,
    REMOTE_TOKEN,
    MalformedRemoteInput,
    ManualSignalingChannel,
    parse_join_url,
)
from .media import AiortcMediaBackend, MediaAcquisitionError, MediaConstraints
from .models import SessionState
from .session import CallSession
from .signaling import SessionFull, SessionNotFound, SignalingChannel

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the ``connect-now`` command."""

    parser = argparse.ArgumentParser(
        prog="connect-now",
        description="Peer-to-peer calls with store-backed or copy/paste signaling",
    )
    parser.add_argument("--config", help="Path to the JSON configuration file.")
    parser.add_argument("--event-log", help="Append call events to this JSONL file.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: %(default)s).",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    serve = subcommands.add_parser("serve", help="Run the HTTP control API.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    call = subcommands.add_parser("call", help="Open or join a room through the configured store.")
    call.add_argument("room", nargs="?", help="Room identifier; generated when omitted.")
    call.add_argument(
        "--join",
        action="store_true",
        help="Join an existing room instead of creating it.",
    )

    manual = subcommands.add_parser("manual", help="Exchange descriptions by copy/paste.")
    manual_actions = manual.add_subparsers(dest="action", required=True)
    create = manual_actions.add_parser("create", help="Start a call and print its offer.")
    create.add_argument("--link-base", help="Print a join link based on this URL.")
    join = manual_actions.add_parser("join", help="Answer a pasted offer.")
    source = join.add_mutually_exclusive_group()
    source.add_argument("--offer", help="Offer blob; prompted for when omitted.")
    source.add_argument("--url", help="Join link carrying the offer.")
    return parser


async def _prompt(text: str) -> str:
    return (await asyncio.to_thread(input, text)).strip()


def _show(label: str, value: str | None) -> None:
    print(f"\n{label}:\n{value}\n", flush=True)


def _new_session(
    config: ConfigManager,
    session_id: str | None,
    channel: SignalingChannel,
    *,
    create: bool,
    event_log: CallEventLog | None,
) -> CallSession:
    settings = config.get_media_settings()
    return CallSession(
        session_id,
        channel,
        AiortcMediaBackend(settings),
        ice=config.get_ice_settings(),
        constraints=MediaConstraints.from_settings(settings),
        create=create,
        event_log=event_log,
    )


async def _run_until_closed(session: CallSession) -> None:
    state = await session.wait_for_state(SessionState.CONNECTED)
    if state is SessionState.CONNECTED:
        print("Connected. Press Ctrl+C to hang up.", flush=True)
    final = await session.wait_for_state(SessionState.CLOSED)
    if session.error is not None:
        print(f"Call ended: {session.error}", flush=True)
    else:
        print(f"Call {final.value}.", flush=True)


async def _paste_candidates(channel: ManualSignalingChannel) -> None:
    while True:
        blob = await _prompt("Paste the peer's candidates (empty to skip): ")
        if not blob:
            return
        try:
            added = channel.apply_pasted_candidates(blob)
        except MalformedRemoteInput as exc:
            print(f"Could not use that paste: {exc}", flush=True)
            continue
        print(f"Applied {added} candidates.", flush=True)
        return


async def _manual_create(
    config: ConfigManager, args: argparse.Namespace, event_log: CallEventLog | None
) -> None:
    channel = ManualSignalingChannel(LOCAL_TOKEN)
    session = _new_session(config, LOCAL_TOKEN, channel, create=True, event_log=event_log)
    try:
        await session.start()
        _show("Offer", channel.export_description())
        if args.link_base:
            _show("Join link", channel.export_join_url(args.link_base))
        while True:
            blob = await _prompt("Paste the answer: ")
            try:
                channel.apply_pasted_answer(blob)
            except MalformedRemoteInput as exc:
                print(f"Could not use that paste: {exc}", flush=True)
                continue
            break
        _show("Candidates", channel.export_candidates())
        await _paste_candidates(channel)
        await _run_until_closed(session)
    finally:
        await session.dispose()


async def _manual_join(
    config: ConfigManager, args: argparse.Namespace, event_log: CallEventLog | None
) -> None:
    channel = ManualSignalingChannel(REMOTE_TOKEN)
    offer = args.offer
    if args.url:
        _token, offer = parse_join_url(args.url)
    while True:
        if not offer:
            offer = await _prompt("Paste the offer: ")
        try:
            channel.apply_pasted_offer(offer)
        except MalformedRemoteInput as exc:
            print(f"Could not use that paste: {exc}", flush=True)
            offer = None
            continue
        break
    session = _new_session(config, REMOTE_TOKEN, channel, create=False, event_log=event_log)
    try:
        await session.start()
        await session.wait_for_state(SessionState.CONNECTING, SessionState.CONNECTED)
        _show("Answer", channel.export_description())
        _show("Candidates", channel.export_candidates())
        await _paste_candidates(channel)
        await _run_until_closed(session)
    finally:
        await session.dispose()


async def _call(
    config: ConfigManager, args: argparse.Namespace, event_log: CallEventLog | None
) -> None:
    settings = config.get_signaling_settings()
    if settings.backend != "firestore":
        raise RuntimeError(
            "Calls between processes need a shared store; set the signaling backend to 'firestore'"
        )
    from .firestore import FirestoreSignalingChannel

    channel = FirestoreSignalingChannel.from_settings(settings)
    session = _new_session(config, args.room, channel, create=not args.join, event_log=event_log)
    try:
        await session.start()
        print(f"Room {session.session_id}: {session.status}", flush=True)
        await _run_until_closed(session)
    finally:
        await session.dispose()
        await channel.close()


def _serve(config_path: str | None, args: argparse.Namespace, event_log: CallEventLog | None) -> None:
    import uvicorn

    from .app import create_app

    app = create_app(config_path, event_log=event_log)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        event_log = CallEventLog(Path(args.event_log)) if args.event_log else None
        if args.command == "serve":
            _serve(args.config, args, event_log)
            return 0
        config = ConfigManager(args.config)
        if args.command == "call":
            asyncio.run(_call(config, args, event_log))
        elif args.action == "create":
            asyncio.run(_manual_create(config, args, event_log))
        else:
            asyncio.run(_manual_join(config, args, event_log))
    except KeyboardInterrupt:
        print("\nHung up.", file=sys.stderr)
        return 130
    except (SessionNotFound, SessionFull) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except MediaAcquisitionError as exc:
        print(f"Error: could not start local media ({exc.reason}): {exc}", file=sys.stderr)
        return 3
    except (MalformedRemoteInput, RuntimeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``connect-now`` console script."""

    return run(argv)


__all__ = ["build_parser", "main", "run"]
