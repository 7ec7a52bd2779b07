"""
homesync — file synchronization endpoint  CLI entry point.

Usage:
    python -m homesync serve [-p PORT] [-d DIR] [-b SIZE] [--host H] [--timeout S]
    python -m homesync push <path> [<path>...] --to HOST --id CLIENT [-p PORT] [--all] [--quiet]
    python -m homesync clients [-d DIR]
"""

from __future__ import annotations

import argparse
import logging
import socket
import sys
from pathlib import Path

from .config import DEFAULT_STORAGE_ROOT, DEFAULT_TIMEOUT, SessionConfig
from .errors import HomeSyncError, StartupError
from .metadata import ClientMetadataStore
from .progress import NullProgress, PushProgress
from .protocol import DEFAULT_BUFFER_SIZE, DEFAULT_PORT
from .session import PushSession, SessionListener
from .transfer import FileEntry, walk_targets

log = logging.getLogger("homesync")


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool, default: int = logging.WARNING) -> None:
    level = logging.DEBUG if verbose else default
    logging.basicConfig(
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        level=level,
    )


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> int:
    """Accept pushes until interrupted."""
    try:
        config = SessionConfig(
            host=args.host,
            port=args.port,
            storage_root=Path(args.directory),
            buffer_size=args.buffer_size,
            timeout=args.timeout or None,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    listener = SessionListener(config)
    try:
        listener.start()
    except StartupError as exc:
        log.error("Startup failed: %s", exc)
        return 1

    print(f"[homesync] Listening on port {listener.address[1]}  →  {config.storage_root}")
    print("[homesync] Press Ctrl-C to stop.\n")
    listener.wait()
    listener.stop()
    return 0


def cmd_push(args: argparse.Namespace) -> int:
    """Push changed files to a server."""
    try:
        entries = list(walk_targets(args.paths))
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    target = f"{args.to}:{args.port}"
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(args.timeout)
    session = PushSession(
        sock, args.id, entries, send_all=args.all,
        progress_factory=None if args.quiet else _progress_factory(target),
    )
    exit_code = 0
    try:
        sock.connect((args.to, args.port))
        result = session.run()
        session.progress.stop()
        print(f"[homesync] ✓ {len(result.sent)} file(s) pushed to {target} "
              f"(previous sync {result.last_sync}).")
    except ConnectionRefusedError:
        print(f"[homesync] Connection refused ({target}). "
              "Is the server running?", file=sys.stderr)
        exit_code = 1
    except (HomeSyncError, OSError) as exc:
        print(f"\n[homesync] Push failed: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        session.progress.stop()
        sock.close()

    return exit_code


def _progress_factory(target: str):
    def make(selected: list[FileEntry]) -> PushProgress | NullProgress:
        if not selected:
            return NullProgress()
        progress = PushProgress(
            total_files=len(selected),
            total_bytes=sum(e.size for e in selected),
            target=target,
        )
        progress.start()
        return progress
    return make


def cmd_clients(args: argparse.Namespace) -> int:
    """List known clients and when they last synchronized."""
    store = ClientMetadataStore(args.directory)
    records = store.clients()
    if not records:
        print("No clients found.")
        return 0

    print(f"\n{'CLIENT':<24} {'LAST SYNC':<20} {'DIRECTORY'}")
    print("-" * 70)
    for r in records:
        print(f"{r.client_id:<24} {r.last_sync:<20} {r.directory}")
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="homesync",
        description="homesync — push-based file synchronization server and client")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    p_serve = sub.add_parser("serve", help="Run the synchronization server")
    p_serve.add_argument("-p", "--port", type=int, default=DEFAULT_PORT,
                         help=f"TCP port to listen on (default {DEFAULT_PORT})")
    p_serve.add_argument("-d", "--directory", default=DEFAULT_STORAGE_ROOT,
                         help=f"Storage directory (default: {DEFAULT_STORAGE_ROOT})")
    p_serve.add_argument("-b", "--buffer-size", "--bufferSize", type=int,
                         default=DEFAULT_BUFFER_SIZE,
                         help=f"I/O chunk size in bytes (default {DEFAULT_BUFFER_SIZE})")
    p_serve.add_argument("--host", default="",
                         help="Address to bind (default: all interfaces)")
    p_serve.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT,
                         help="Per-session socket timeout in seconds, 0 to disable "
                              f"(default {DEFAULT_TIMEOUT:g})")

    # --- push ---
    p_push = sub.add_parser("push", help="Push files/folders to a server")
    p_push.add_argument("paths", nargs="+", help="Files or directories to push")
    p_push.add_argument("--to", required=True, help="Server hostname or IP address")
    p_push.add_argument("--id", required=True, help="Client id to present")
    p_push.add_argument("-p", "--port", type=int, default=DEFAULT_PORT,
                        help=f"Server TCP port (default {DEFAULT_PORT})")
    p_push.add_argument("--all", action="store_true",
                        help="Send every file, not only those changed since the last sync")
    p_push.add_argument("--timeout", type=float, default=30,
                        help="Socket timeout in seconds (default 30)")
    p_push.add_argument("--quiet", action="store_true", help="No progress bars")

    # --- clients ---
    p_clients = sub.add_parser("clients", help="List clients known to a storage directory")
    p_clients.add_argument("-d", "--directory", default=DEFAULT_STORAGE_ROOT,
                           help=f"Storage directory (default: {DEFAULT_STORAGE_ROOT})")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose,
                   default=logging.INFO if args.command == "serve" else logging.WARNING)

    handlers = {
        "serve":   cmd_serve,
        "push":    cmd_push,
        "clients": cmd_clients,
    }
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
