"""
homesync sessions: receiver, sender and the accepting listener.

TransferSession
---------------
    Drives one accepted connection: client id → buffer size + last sync →
    file count → (name, size, bytes, checksum) per file → last-sync update.
    A checksum mismatch is recorded and the batch carries on; any transport
    error ends the session.

PushSession
-----------
    The client side of the same exchange.  Sends only files changed since
    the server's last sync unless told to send everything.

SessionListener
---------------
    Listens on the configured port in a daemon thread and runs a
    TransferSession per connection in its own thread, all sharing one
    ClientMetadataStore.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable

from .config import SessionConfig
from .errors import (
    ChecksumMismatch,
    HomeSyncError,
    MetadataPersistenceError,
    ProtocolError,
    StartupError,
    TransportError,
    UnsafePathError,
)
from .integrity import ChecksumVerifier
from .metadata import ClientMetadataStore, check_client_id, resolve_file_path
from .progress import NullProgress, PushProgress
from .protocol import (
    read_int,
    read_long,
    read_utf,
    recv_some,
    send_all,
    write_int,
    write_long,
    write_utf,
)
from .transfer import FileEntry, changed_since, chunk_file

log = logging.getLogger("homesync.session")


# ---------------------------------------------------------------------------
# Session events
# ---------------------------------------------------------------------------

@dataclass
class FileResult:
    name: str
    declared_size: int = 0
    bytes_received: int = 0
    verified: bool = False
    reason: str = ""


@dataclass
class SessionReport:
    client_id: str
    peer: str
    file_count: int = 0
    files: list[FileResult] = field(default_factory=list)
    metadata_updated: bool = False

    @property
    def failed(self) -> list[FileResult]:
        return [f for f in self.files if not f.verified]


# ---------------------------------------------------------------------------
# Receiver
# ---------------------------------------------------------------------------

class TransferSession:
    """
    Receiver side of one connection.  Runs synchronously in the calling
    thread and closes the socket before run() returns or raises.
    """

    def __init__(
        self,
        sock: socket.socket,
        config: SessionConfig,
        store: ClientMetadataStore,
        peer: str = "?",
    ) -> None:
        self._sock = sock
        self._config = config
        self._store = store
        self.peer = peer
        self.stage = "await-client-id"
        self.client_id: str | None = None
        self.current_file: str | None = None

    def describe(self) -> str:
        """Client / stage / file context for log lines."""
        parts = [f"client={self.client_id or '?'}", f"peer={self.peer}", f"stage={self.stage}"]
        if self.current_file is not None:
            parts.append(f"file={self.current_file!r}")
        return " ".join(parts)

    def run(self) -> SessionReport:
        try:
            return self._run()
        finally:
            try:
                self._sock.close()
            except OSError:
                pass

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _run(self) -> SessionReport:
        client_id = check_client_id(read_utf(self._sock))
        self.client_id = client_id
        report = SessionReport(client_id=client_id, peer=self.peer)
        log.info("Connection established with %s (%s)", client_id, self.peer)

        self.stage = "handshake"
        last_sync = self._store.get_last_sync(client_id)
        log.debug("Sending buffer size %d and last sync %s to %s",
                  self._config.buffer_size, last_sync, client_id)
        write_int(self._sock, self._config.buffer_size)
        write_utf(self._sock, last_sync)

        self.stage = "await-file-count"
        file_count = read_int(self._sock)
        if file_count < 0:
            raise ProtocolError(f"negative file count: {file_count}")
        report.file_count = file_count
        if file_count == 0:
            log.info("%s has nothing to send", client_id)
            return report

        log.info("Ready to receive %d file(s) from %s", file_count, client_id)
        directory = self._store.get_directory(client_id)
        self.stage = "receive-file"
        for idx in range(file_count):
            report.files.append(self._receive_file(idx, file_count, directory))

        # The clock advances for any non-empty batch, even one with failures.
        self.stage = "update-metadata"
        self._store.set_last_sync(client_id)
        report.metadata_updated = True
        self.stage = "done"
        return report

    def _receive_file(self, idx: int, total: int, directory: Path) -> FileResult:
        name = read_utf(self._sock)
        self.current_file = name
        result = FileResult(name=name)

        try:
            dest = resolve_file_path(directory, name)
        except UnsafePathError as exc:
            return self._skip_file(idx, total, result, str(exc))

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fh = open(dest, "wb")
        except OSError as exc:
            return self._skip_file(idx, total, result, f"cannot open destination: {exc}")

        verifier = ChecksumVerifier()
        with fh:
            result.declared_size = self._read_size()
            log.info("Receiving [%d/%d] %s (%d bytes)",
                     idx + 1, total, name, result.declared_size)
            self._copy(result, verifier, fh)

        declared = read_utf(self._sock)
        try:
            verifier.check(declared)
        except ChecksumMismatch as exc:
            result.reason = str(exc)
            log.warning("File %s from %s failed verification: %s",
                        name, self.client_id, exc)
        else:
            result.verified = True
            log.info("File %s OK (%d bytes)", name, result.bytes_received)
        self.current_file = None
        return result

    def _skip_file(self, idx: int, total: int, result: FileResult, reason: str) -> FileResult:
        """Consume a file's size, payload and checksum without storing it."""
        result.declared_size = self._read_size()
        self._copy(result, ChecksumVerifier(), None)
        read_utf(self._sock)
        result.reason = reason
        log.warning("Rejected [%d/%d] %r from %s: %s",
                    idx + 1, total, result.name, self.client_id, reason)
        self.current_file = None
        return result

    def _read_size(self) -> int:
        size = read_long(self._sock)
        if size < 0:
            raise ProtocolError(f"negative file size: {size}")
        return size

    def _copy(self, result: FileResult, verifier: ChecksumVerifier,
              fh: BinaryIO | None) -> None:
        remaining = result.declared_size
        while remaining > 0:
            chunk = recv_some(self._sock, min(self._config.buffer_size, remaining))
            if fh is not None:
                fh.write(chunk)
            verifier.update(chunk)
            remaining -= len(chunk)
            result.bytes_received += len(chunk)
            log.debug("%d bytes remaining for %s", remaining, result.name)


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------

@dataclass
class PushResult:
    buffer_size: int
    last_sync: str
    sent: list[FileEntry] = field(default_factory=list)


ProgressFactory = Callable[[list[FileEntry]], "PushProgress | NullProgress"]


class PushSession:
    """
    Push files to a homesync server over an established socket.
    The socket must be connected; caller is responsible for closing it.
    """

    def __init__(
        self,
        sock: socket.socket,
        client_id: str,
        entries: list[FileEntry],
        send_all: bool = False,
        progress_factory: ProgressFactory | None = None,
    ) -> None:
        self._sock = sock
        self._client_id = client_id
        self._entries = entries
        self._send_all = send_all
        self._progress_factory = progress_factory
        self.progress: PushProgress | NullProgress = NullProgress()

    def run(self) -> PushResult:
        """
        Handshake, pick the files to send, send them. Raises on fatal error.

        The progress factory is called once with the selected entries, after
        the server has said when this client last synced.
        """
        buffer_size, last_sync = self.handshake()
        selected = list(self._entries) if self._send_all else self.select(self._entries, last_sync)
        if self._progress_factory is not None:
            self.progress = self._progress_factory(selected)
        log.info("Server last sync %s: sending %d of %d file(s)",
                 last_sync, len(selected), len(self._entries))
        self.send(selected, buffer_size)
        return PushResult(buffer_size=buffer_size, last_sync=last_sync, sent=selected)

    def handshake(self) -> tuple[int, str]:
        write_utf(self._sock, self._client_id)
        buffer_size = read_int(self._sock)
        if buffer_size <= 0:
            raise ProtocolError(f"server sent invalid buffer size {buffer_size}")
        last_sync = read_utf(self._sock)
        log.debug("Handshake OK (buffer %d, last sync %s)", buffer_size, last_sync)
        return buffer_size, last_sync

    def select(self, entries: list[FileEntry], last_sync: str) -> list[FileEntry]:
        """Files modified after the server's last sync."""
        return changed_since(entries, last_sync)

    def send(self, entries: list[FileEntry], buffer_size: int) -> None:
        write_int(self._sock, len(entries))
        for idx, entry in enumerate(entries):
            self._send_file(idx, len(entries), entry, buffer_size)

    def _send_file(self, idx: int, total: int, entry: FileEntry, buffer_size: int) -> None:
        log.info("Sending [%d/%d] %s (%d bytes)", idx + 1, total, entry.rel_path, entry.size)
        write_utf(self._sock, entry.rel_path)
        write_long(self._sock, entry.size)

        verifier = ChecksumVerifier()
        with self.progress.file(entry.rel_path, entry.size) as fp:
            for block in chunk_file(entry.abs_path, buffer_size, limit=entry.size):
                send_all(self._sock, block)
                verifier.update(block)
                fp.advance(len(block))

        if verifier.bytes_seen != entry.size:
            raise HomeSyncError(
                f"{entry.abs_path} shrank while sending "
                f"({verifier.bytes_seen} of {entry.size} bytes)")
        write_utf(self._sock, verifier.finalize_hex())


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------

class SessionListener:
    """
    TCP server accepting homesync connections on config.port.
    Each connection is handled in its own thread.
    """

    def __init__(
        self,
        config: SessionConfig,
        store: ClientMetadataStore | None = None,
        on_report: Callable[[SessionReport], None] | None = None,
    ) -> None:
        self._config = config
        self._store = store or ClientMetadataStore(config.storage_root)
        self._on_report = on_report
        self._server_sock: socket.socket | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._sessions: set[threading.Thread] = set()
        self._sessions_lock = threading.Lock()

    @property
    def active_sessions(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)

    @property
    def store(self) -> ClientMetadataStore:
        return self._store

    @property
    def address(self) -> tuple[str, int]:
        if self._server_sock is None:
            raise RuntimeError("listener not started")
        host, port = self._server_sock.getsockname()[:2]
        return host, port

    def start(self) -> None:
        try:
            self._store.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StartupError(f"cannot create storage root {self._store.root}: {exc}") from exc

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._config.host, self._config.port))
            sock.listen(8)
            sock.settimeout(1.0)
        except OSError as exc:
            sock.close()
            raise StartupError(f"cannot listen on port {self._config.port}: {exc}") from exc
        self._server_sock = sock

        self._thread = threading.Thread(
            target=self._accept_loop, daemon=True, name="homesync-listener"
        )
        self._thread.start()
        log.info("Awaiting connections on port %d → %s",
                 self.address[1], self._store.root)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop accepting, then give in-flight sessions *timeout* seconds each."""
        self._stop_event.set()
        if self._server_sock:
            try:
                self._server_sock.close()
            except OSError:
                pass
        if self._thread:
            self._thread.join(timeout=timeout)
        with self._sessions_lock:
            pending = list(self._sessions)
        for t in pending:
            t.join(timeout=timeout)
        if self.active_sessions:
            log.warning("%d session(s) still running after stop", self.active_sessions)

    def wait(self) -> None:
        """Block until Ctrl-C."""
        try:
            while not self._stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            self.stop()

    def serve_forever(self) -> None:
        self.start()
        self.wait()

    def _accept_loop(self) -> None:
        assert self._server_sock is not None
        while not self._stop_event.is_set():
            try:
                conn, addr = self._server_sock.accept()
            except TimeoutError:
                continue
            except OSError:
                break
            log.debug("Incoming connection from %s:%d", *addr[:2])
            t = threading.Thread(
                target=self._handle_connection,
                args=(conn, addr),
                daemon=True,
                name=f"homesync-session-{addr[0]}:{addr[1]}",
            )
            with self._sessions_lock:
                self._sessions.add(t)
            t.start()

    def _handle_connection(self, conn: socket.socket, addr: tuple) -> None:
        conn.settimeout(self._config.timeout)
        session = TransferSession(conn, self._config, self._store,
                                  peer=f"{addr[0]}:{addr[1]}")
        try:
            report = session.run()
            log.info("Session with %s finished: %d file(s), %d failed, last sync %s",
                     report.client_id, report.file_count, len(report.failed),
                     "updated" if report.metadata_updated else "unchanged")
            if self._on_report is not None:
                self._on_report(report)
        except TransportError as exc:
            log.warning("Session aborted (%s): %s", session.describe(), exc)
        except (UnsafePathError, MetadataPersistenceError) as exc:
            log.error("Session failed (%s): %s", session.describe(), exc)
        except Exception as exc:
            log.error("Error handling %s (%s): %s", addr[0], session.describe(), exc,
                      exc_info=True)
        finally:
            with self._sessions_lock:
                self._sessions.discard(threading.current_thread())
