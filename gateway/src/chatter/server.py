"""Chatter gateway CLI: run the server or replay frames through the coordinator."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable, Iterable, TextIO

from aiohttp import web

from .config import load_config_from_env
from .engine import Coordinator
from .errors import ChatterError, InvalidRequest
from .ws_transport import create_app

log = logging.getLogger("chatter.server")


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Process JSON frames through a coordinator and emit what each connection receives.

    Each input frame names its connection in ``conn``. ``connect`` and
    ``disconnect`` manage connections, ``login`` binds one to ``body.user_id``
    directly, and every other type is a regular client frame. Connections are
    opened implicitly on first use. Every delivered frame is written as one
    JSON line tagged with the receiving ``conn``.
    """

    coordinator = Coordinator()

    def deliver_to(conn: str) -> Callable[[dict], None]:
        def _deliver(payload: dict) -> None:
            output.write(json.dumps({"conn": conn, **payload}) + "\n")

        return _deliver

    for frame in frames:
        conn = frame.get("conn")
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if not conn:
            raise ValueError("every frame needs a conn")
        if conn not in coordinator.hub and frame_type != "disconnect":
            coordinator.on_connect(conn, deliver_to(conn))

        try:
            if frame_type == "connect":
                continue
            if frame_type == "disconnect":
                coordinator.on_disconnect(conn)
            elif frame_type == "login":
                coordinator.on_login(conn, body.get("user_id", ""))
            elif frame_type == "chat.send":
                coordinator.on_send(conn, body.get("to", ""), body.get("payload", ""), bool(body.get("has_attachment")))
            elif frame_type == "chat.history":
                coordinator.on_get_history(conn, body.get("with_user", ""))
            elif frame_type == "chat.peek":
                coordinator.on_set_peek(conn, body.get("with_user", ""))
            elif frame_type == "chat.unpeek":
                coordinator.on_clear_peek(conn, body.get("with_user", ""))
            elif frame_type == "chat.poll_status":
                coordinator.on_poll_status(conn, body.get("to", ""))
            else:
                raise InvalidRequest(f"unsupported frame type: {frame_type}")
        except ChatterError as exc:
            log.warning("frame %s on %s rejected: %s", frame_type, conn, exc)


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config_from_env().with_overrides(
        host=args.host,
        port=args.port,
        ping_interval_s=args.ping_interval,
        db_path=args.db,
        peek_ttl_s=args.peek_ttl,
        log_level=args.log_level,
    )
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("starting chatter gateway on %s:%d", config.host, config.port)
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Chatter gateway CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay client frames through the coordinator")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat gateway")
    serve_parser.add_argument("--host", default=None, help="Host to bind (CHATTER_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind (CHATTER_PORT)")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=None,
        help="Seconds between heartbeat pings (CHATTER_PING_INTERVAL_S)",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument(
        "--peek-ttl",
        type=int,
        default=None,
        help="Expire peeks not re-asserted within this many seconds; 0 disables (CHATTER_PEEK_TTL_S)",
    )
    serve_parser.add_argument(
        "--log-level",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        default=None,
        help="Logging level (CHATTER_LOG_LEVEL)",
    )

    args = parser.parse_args(argv)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
