r"""
Per-client metadata store.

Each client gets its own directory under the storage root holding the files
it pushes plus a small Java-properties style record:

    storage_root/<client_id>/.properties
        #2026-10-17 12:00:00
        alice.lastSync=2026-10-17 12\:00\:00

Records are loaded lazily on first reference and cached for the lifetime of
the process; later edits to the file on disk are not picked up.  All
operations for one client id are serialised by a per-client lock, so two
sessions for the same client never interleave a read-modify-write, and the
first reference to an unseen client creates its directory exactly once.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .errors import MetadataPersistenceError, UnsafePathError
from .protocol import DEFAULT_LAST_SYNC, TIMESTAMP_FORMAT

log = logging.getLogger("homesync.metadata")

METADATA_FILE: str = ".properties"
PROP_LAST_SYNC: str = "lastSync"
# Written by older servers; normalised on load.
LEGACY_TIMESTAMP_FORMAT: str = "%Y-%m-%d %H%M%S"


# ---------------------------------------------------------------------------
# Path checks
# ---------------------------------------------------------------------------

def check_client_id(client_id: str) -> str:
    """Return *client_id* if it is usable as a single directory name."""
    if (not client_id or client_id in (".", "..")
            or any(c in client_id for c in "/\\\0")):
        raise UnsafePathError(f"unsafe client id: {client_id!r}")
    return client_id


def _has_drive(name: str) -> bool:
    return (len(name) >= 2 and name[0].isascii() and name[0].isalpha()
            and name[1] == ":" and (len(name) == 2 or name[2] == "/"))


def resolve_file_path(directory: Path, file_name: str) -> Path:
    """
    Map a client-supplied *file_name* onto a path inside *directory*.

    Relative sub-paths are allowed ("photos/a.jpg"); absolute paths, drive
    prefixes ("C:", "C:/x") and ".." segments are not.  A colon elsewhere is
    an ordinary character ("a:b.txt").  Backslashes count as separators.
    """
    if not file_name or "\0" in file_name:
        raise UnsafePathError(f"unsafe file name: {file_name!r}")
    normalised = file_name.replace("\\", "/")
    if normalised.startswith("/") or _has_drive(normalised):
        raise UnsafePathError(f"absolute file name: {file_name!r}")
    parts = [p for p in normalised.split("/") if p not in ("", ".")]
    if not parts or ".." in parts:
        raise UnsafePathError(f"unsafe file name: {file_name!r}")
    if len(parts) == 1 and parts[0].startswith(METADATA_FILE):
        raise UnsafePathError(f"reserved file name: {file_name!r}")
    return directory.joinpath(*parts)


# ---------------------------------------------------------------------------
# Properties text
# ---------------------------------------------------------------------------

_ESCAPES = {"\t": "\\t", "\n": "\\n", "\r": "\\r", "\f": "\\f"}
_UNESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _escape(text: str, is_key: bool) -> str:
    out = []
    units = text.encode("utf-16-be", "surrogatepass")
    for i in range(0, len(units), 2):
        c = (units[i] << 8) | units[i + 1]
        ch = chr(c)
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ch in "\\=:#!" or (ch == " " and (is_key or not out)):
            out.append("\\" + ch)
        elif c < 0x20 or c > 0x7E:
            out.append(f"\\u{c:04X}")
        else:
            out.append(ch)
    return "".join(out)


def _unescape(text: str) -> str:
    units = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt == "u":
                digits = text[i + 2:i + 6]
                if len(digits) != 4 or not all(d in "0123456789abcdefABCDEF" for d in digits):
                    raise ValueError(f"malformed \\u escape: {digits!r}")
                units.append(int(digits, 16))
                i += 6
                continue
            units.append(ord(_UNESCAPES.get(nxt, nxt)))
            i += 2
            continue
        units.append(ord(ch))
        i += 1
    raw = b"".join(
        u.to_bytes(2, "big") if u <= 0xFFFF else chr(u).encode("utf-16-be")
        for u in units
    )
    return raw.decode("utf-16-be", "surrogatepass")


def _logical_lines(text: str):
    pending = ""
    for line in text.splitlines():
        if not pending and line.lstrip()[:1] in ("#", "!"):
            yield line.lstrip()
            continue
        line = pending + line.lstrip() if pending else line.lstrip()
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            pending = line[:-1]
            continue
        pending = ""
        yield line
    if pending:
        yield pending


def parse_properties(text: str) -> dict[str, str]:
    """Parse properties text; malformed lines are logged and skipped."""
    props: dict[str, str] = {}
    for line in _logical_lines(text):
        if not line or line[0] in "#!":
            continue
        i = 0
        while i < len(line) and line[i] not in "=: \t\f":
            i += 2 if line[i] == "\\" else 1
        raw_key, rest = line[:i], line[i:].lstrip(" \t\f")
        if rest[:1] in ("=", ":"):
            rest = rest[1:].lstrip(" \t\f")
        try:
            props[_unescape(raw_key)] = _unescape(rest)
        except ValueError:
            log.warning("Skipping malformed metadata line: %r", line)
    return props


def format_properties(props: dict[str, str], comment: str | None = None) -> str:
    lines = []
    if comment is not None:
        lines.append("#" + comment)
    for key, value in props.items():
        lines.append(f"{_escape(key, True)}={_escape(value, False)}")
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@dataclass
class ClientMetadata:
    client_id: str
    directory: Path
    last_sync: str = DEFAULT_LAST_SYNC
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def metadata_file(self) -> Path:
        return self.directory / METADATA_FILE

    @property
    def last_sync_key(self) -> str:
        return f"{self.client_id}.{PROP_LAST_SYNC}"


def _normalise_timestamp(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    for fmt in (TIMESTAMP_FORMAT, LEGACY_TIMESTAMP_FORMAT):
        try:
            return datetime.strptime(value, fmt).strftime(TIMESTAMP_FORMAT)
        except ValueError:
            continue
    return None


class ClientMetadataStore:
    """Shared by every session of one server process."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._records: dict[str, ClientMetadata] = {}
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def get_last_sync(self, client_id: str) -> str:
        """Stored timestamp, or the epoch default for a client never seen."""
        with self._lock_for(client_id):
            return self._record(client_id).last_sync

    def set_last_sync(self, client_id: str) -> str:
        """Stamp the client with the current local time and persist it."""
        with self._lock_for(client_id):
            record = self._record(client_id)
            now = datetime.now().strftime(TIMESTAMP_FORMAT)
            props = dict(record.properties)
            props[record.last_sync_key] = now
            self._persist(record.metadata_file, props, now)
            record.properties = props
            record.last_sync = now
            log.info("Client %s last sync set to %s", client_id, now)
            return now

    def get_directory(self, client_id: str) -> Path:
        with self._lock_for(client_id):
            return self._record(client_id).directory

    def clients(self) -> list[ClientMetadata]:
        """Every client that has a record under the storage root."""
        if not self._root.is_dir():
            return []
        found = []
        for entry in sorted(self._root.iterdir()):
            if not (entry / METADATA_FILE).is_file():
                continue
            try:
                check_client_id(entry.name)
            except UnsafePathError:
                continue
            with self._lock_for(entry.name):
                found.append(self._record(entry.name))
        return found

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _lock_for(self, client_id: str) -> threading.Lock:
        check_client_id(client_id)
        with self._guard:
            lock = self._locks.get(client_id)
            if lock is None:
                lock = self._locks[client_id] = threading.Lock()
            return lock

    def _record(self, client_id: str) -> ClientMetadata:
        """Cached record; caller must hold the client's lock."""
        record = self._records.get(client_id)
        if record is None:
            record = self._load(client_id)
            self._records[client_id] = record
        return record

    def _load(self, client_id: str) -> ClientMetadata:
        record = ClientMetadata(client_id=client_id, directory=self._root / client_id)
        path = record.metadata_file
        try:
            if not record.directory.is_dir():
                log.info("New client %s → %s", client_id, record.directory)
            record.directory.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
            text = path.read_text(encoding="latin-1")
        except OSError as exc:
            raise MetadataPersistenceError(
                f"cannot create metadata for {client_id} in {record.directory}: {exc}"
            ) from exc

        record.properties = parse_properties(text)
        raw = record.properties.get(record.last_sync_key)
        last_sync = _normalise_timestamp(raw)
        if last_sync is None:
            if raw is not None:
                log.warning("Unreadable last sync %r for %s, using default", raw, client_id)
            last_sync = DEFAULT_LAST_SYNC
        record.last_sync = last_sync
        return record

    @staticmethod
    def _persist(path: Path, props: dict[str, str], stamp: str) -> None:
        """Write-then-rename so readers only ever see a complete file."""
        tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp, "w", encoding="latin-1", newline="\n") as fh:
                fh.write(format_properties(props, comment=stamp))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise MetadataPersistenceError(f"cannot write {path}: {exc}") from exc
