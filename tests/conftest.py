from __future__ import annotations

import hashlib
import socket
import threading

import pytest

from homesync.config import SessionConfig
from homesync.metadata import ClientMetadataStore
from homesync.protocol import read_int, read_utf, send_all, write_long, write_utf
from homesync.session import TransferSession


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest().upper()


class SessionRunner:
    """Runs a TransferSession on one end of a socketpair in a thread."""

    def __init__(self, config: SessionConfig, store: ClientMetadataStore) -> None:
        self.client, server = socket.socketpair()
        self.client.settimeout(5)
        server.settimeout(5)
        self.session = TransferSession(server, config, store, peer="test")
        self.report = None
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            self.report = self.session.run()
        except BaseException as exc:  # surfaced to the test via .error
            self.error = exc

    def handshake(self, client_id: str) -> tuple[int, str]:
        write_utf(self.client, client_id)
        return read_int(self.client), read_utf(self.client)

    def send_file(self, name: str, data: bytes, checksum: str | None = None) -> None:
        write_utf(self.client, name)
        write_long(self.client, len(data))
        send_all(self.client, data)
        write_utf(self.client, md5_hex(data) if checksum is None else checksum)

    def finish(self, timeout: float = 5) -> None:
        self.client.close()
        self._thread.join(timeout)
        assert not self._thread.is_alive()


@pytest.fixture
def config(tmp_path):
    return SessionConfig(host="127.0.0.1", port=0, storage_root=tmp_path / "sync",
                         buffer_size=16, timeout=5)


@pytest.fixture
def store(config):
    return ClientMetadataStore(config.storage_root)


@pytest.fixture
def runner(config, store):
    r = SessionRunner(config, store)
    yield r
    r.client.close()
