"""
homesync wire protocol — framing helpers.

One request/response sequence per TCP connection, all integers big-endian:

  client → server   UTF    client id
  server → client   I32    buffer size
  server → client   UTF    last sync timestamp
  client → server   I32    file count
  per file:
  client → server   UTF    file name
  client → server   I64    declared size
  client → server   raw    exactly <declared size> bytes
  client → server   UTF    hex MD5 checksum

UTF is Java's DataOutput "modified UTF-8": a 2-byte unsigned length followed
by the encoded bytes.  NUL is written as C0 80 and characters outside the BMP
as two 3-byte surrogate encodings.
"""

from __future__ import annotations

import socket
import struct

from .errors import ProtocolError, TransportError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

U16 = struct.Struct("!H")
I32 = struct.Struct("!i")
I64 = struct.Struct("!q")

MAX_UTF_BYTES: int = 0xFFFF

DEFAULT_PORT: int = 3999
DEFAULT_BUFFER_SIZE: int = 1024
DEFAULT_LAST_SYNC: str = "1970-01-01 00:00:00"
TIMESTAMP_FORMAT: str = "%Y-%m-%d %H:%M:%S"


# ---------------------------------------------------------------------------
# Modified UTF-8
# ---------------------------------------------------------------------------

def encode_utf(text: str) -> bytes:
    """Encode *text* as length-prefixed modified UTF-8."""
    body = bytearray()
    units = text.encode("utf-16-be", "surrogatepass")
    for i in range(0, len(units), 2):
        c = (units[i] << 8) | units[i + 1]
        if 0x0001 <= c <= 0x007F:
            body.append(c)
        elif c <= 0x07FF:
            body.append(0xC0 | (c >> 6))
            body.append(0x80 | (c & 0x3F))
        else:
            body.append(0xE0 | (c >> 12))
            body.append(0x80 | ((c >> 6) & 0x3F))
            body.append(0x80 | (c & 0x3F))
    if len(body) > MAX_UTF_BYTES:
        raise ValueError(f"encoded string too long: {len(body)} bytes")
    return U16.pack(len(body)) + bytes(body)


def decode_utf_body(data: bytes) -> str:
    """Decode modified UTF-8 *data* (without the length prefix)."""
    units = bytearray()
    i, n = 0, len(data)
    while i < n:
        b = data[i]
        if b < 0x80:
            c = b
            i += 1
        elif b & 0xE0 == 0xC0:
            if i + 1 >= n or data[i + 1] & 0xC0 != 0x80:
                raise ProtocolError(f"malformed UTF input around byte {i}")
            c = ((b & 0x1F) << 6) | (data[i + 1] & 0x3F)
            i += 2
        elif b & 0xF0 == 0xE0:
            if i + 2 >= n or data[i + 1] & 0xC0 != 0x80 or data[i + 2] & 0xC0 != 0x80:
                raise ProtocolError(f"malformed UTF input around byte {i}")
            c = ((b & 0x0F) << 12) | ((data[i + 1] & 0x3F) << 6) | (data[i + 2] & 0x3F)
            i += 3
        else:
            raise ProtocolError(f"malformed UTF input around byte {i}")
        units += c.to_bytes(2, "big")
    # Valid surrogate pairs recombine here; lone surrogates pass through.
    return bytes(units).decode("utf-16-be", "surrogatepass")


# ---------------------------------------------------------------------------
# Socket helpers
# ---------------------------------------------------------------------------

def recv_exact(sock: socket.socket, n: int) -> bytes:
    """Blocking read of exactly n bytes. Raises TransportError on close/timeout."""
    if n == 0:
        return b""
    buf = bytearray(n)
    view = memoryview(buf)
    received = 0
    while received < n:
        try:
            count = sock.recv_into(view[received:], n - received)
        except OSError as exc:
            raise TransportError(f"receive failed: {exc}") from exc
        if not count:
            raise TransportError(
                f"connection closed after {received} of {n} bytes")
        received += count
    return bytes(buf)


def recv_some(sock: socket.socket, limit: int) -> bytes:
    """Read at most *limit* bytes; raise TransportError if the peer has gone."""
    try:
        data = sock.recv(limit)
    except OSError as exc:
        raise TransportError(f"receive failed: {exc}") from exc
    if not data:
        raise TransportError("connection closed mid-payload")
    return data


def send_all(sock: socket.socket, data: bytes) -> None:
    try:
        sock.sendall(data)
    except OSError as exc:
        raise TransportError(f"send failed: {exc}") from exc


def read_utf(sock: socket.socket) -> str:
    (length,) = U16.unpack(recv_exact(sock, U16.size))
    return decode_utf_body(recv_exact(sock, length))


def write_utf(sock: socket.socket, text: str) -> None:
    send_all(sock, encode_utf(text))


def read_int(sock: socket.socket) -> int:
    return I32.unpack(recv_exact(sock, I32.size))[0]


def write_int(sock: socket.socket, value: int) -> None:
    send_all(sock, I32.pack(value))


def read_long(sock: socket.socket) -> int:
    return I64.unpack(recv_exact(sock, I64.size))[0]


def write_long(sock: socket.socket, value: int) -> None:
    send_all(sock, I64.pack(value))
