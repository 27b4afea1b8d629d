"""Document store server and session simulator CLI."""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import sys
from typing import Callable, Iterable, List, Optional, TextIO

from aiohttp import web

from .errors import ChatSyncError
from .logging_utils import configure_logging
from .memory import InMemoryRemoteChannel
from .models import MESSAGES_COLLECTION, PRESENCE_ONLINE, USERS_COLLECTION, Message, PresenceEntry, UserProfile
from .render import message_line
from .session import ChatSession, SessionConfig, SessionError
from .store import DocumentStore, RecordRejected, StoreConfig, _now_ms
from .ws_transport import create_app


def simulate(frames: Iterable[dict], output: TextIO, *, now_func: Callable[[], int] = _now_ms) -> None:
    """Drive a ``ChatSession`` over an in-memory store and emit read-model events."""

    asyncio.run(_simulate(list(frames), output, now_func))


async def _simulate(frames: List[dict], output: TextIO, now_func: Callable[[], int]) -> None:
    store = DocumentStore(now_func=now_func)
    remote = InMemoryRemoteChannel(store)
    session = ChatSession(remote, SessionConfig(presence_heartbeat_s=None), now_func=now_func)

    def emit(message: dict) -> None:
        output.write(json.dumps(message, sort_keys=True) + "\n")

    def on_messages(messages: tuple[Message, ...]) -> None:
        emit(
            {
                "t": "messages",
                "channel": session.channel_id,
                "empty": not messages,
                "lines": [message_line(m, dt.timezone.utc) for m in messages],
            }
        )

    def on_presence(entries: List[PresenceEntry]) -> None:
        emit({"t": "presence", "users": [entry.user_id for entry in entries]})

    def on_error(error: Optional[SessionError]) -> None:
        if error is not None:
            emit({"t": "error", "kind": error.kind, "message": error.message, "recoverable": error.recoverable})

    session.on_message_log_changed(on_messages)
    session.on_presence_changed(on_presence)
    session.on_error(on_error)

    for frame in frames:
        frame_type = frame.get("t")
        if frame_type == "sign_in":
            user = UserProfile(
                uid=frame["uid"],
                email=frame.get("email", f"{frame['uid']}@example.com"),
                display_name=frame.get("display_name"),
            )
            await session.sign_in(user)
        elif frame_type == "send":
            try:
                await session.send_message(frame.get("text", ""))
            except ChatSyncError as exc:
                emit({"t": "send_failed", "error": type(exc).__name__, "message": str(exc)})
        elif frame_type == "switch":
            try:
                await session.switch_channel(frame["channel"])
            except ChatSyncError as exc:
                emit({"t": "switch_failed", "error": type(exc).__name__, "message": str(exc)})
        elif frame_type == "search":
            result = session.search(frame.get("term", ""))
            emit(
                {
                    "t": "search",
                    "term": result.term,
                    "state": result.state,
                    "lines": [message_line(m, dt.timezone.utc) for m in result.messages],
                }
            )
        elif frame_type == "sign_out":
            await session.sign_out()
        elif frame_type == "remote_write":
            record = {
                "channel": frame["channel"],
                "user_id": frame["uid"],
                "display_name": frame.get("display_name", frame["uid"]),
                "email": frame.get("email", ""),
                "text": frame["text"],
            }
            try:
                store.append(MESSAGES_COLLECTION, record)
            except RecordRejected as exc:
                emit({"t": "remote_rejected", "code": exc.code, "message": str(exc)})
        elif frame_type == "presence":
            store.put(
                USERS_COLLECTION,
                frame["uid"],
                {
                    "uid": frame["uid"],
                    "email": frame.get("email", ""),
                    "display_name": frame.get("display_name", frame["uid"]),
                    "status": frame.get("status", PRESENCE_ONLINE),
                },
            )
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")

    await session.close()


def read_frames(handle: TextIO) -> List[dict]:
    """Frames as one JSON array, or one JSON object per line."""

    text = handle.read().strip()
    if not text:
        return []
    if text.startswith("["):
        frames = json.loads(text)
    else:
        frames = [json.loads(line) for line in text.splitlines() if line.strip()]
    if not isinstance(frames, list) or not all(isinstance(frame, dict) for frame in frames):
        raise ValueError("frames must be JSON objects")
    return frames


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = read_frames(sys.stdin)
    else:
        with args.file:
            frames = read_frames(args.file)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    store = DocumentStore(StoreConfig(presence_ttl_s=args.presence_ttl))
    app = create_app(store=store, ping_interval_s=args.ping_interval)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatsync", description="Channel sync engine tools")
    parser.add_argument("--log-level", default=None, help="DEBUG/INFO/WARNING/ERROR (default: $CHATSYNC_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay session frames against an in-memory store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp document store server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=30, help="Seconds between heartbeat pings")
    serve_parser.add_argument(
        "--presence-ttl",
        type=int,
        default=StoreConfig.presence_ttl_s,
        help="Seconds without a heartbeat before a user is marked offline",
    )
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    args = build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.log_level)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
