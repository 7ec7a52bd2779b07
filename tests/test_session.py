from __future__ import annotations

import re

from conftest import SessionRunner, md5_hex

from homesync.errors import ProtocolError, TransportError, UnsafePathError
from homesync.metadata import METADATA_FILE, parse_properties
from homesync.protocol import DEFAULT_LAST_SYNC, read_int, send_all, write_int, write_long, write_utf


def _props(store, client_id):
    return parse_properties((store.root / client_id / METADATA_FILE).read_text("latin-1"))


def test_zero_files_leaves_last_sync_alone(runner, store, config):
    buffer_size, last_sync = runner.handshake("alice")
    assert buffer_size == config.buffer_size
    assert last_sync == DEFAULT_LAST_SYNC
    write_int(runner.client, 0)
    runner.finish()

    assert runner.error is None
    assert runner.report.file_count == 0
    assert not runner.report.metadata_updated
    assert (store.root / "alice").is_dir()
    assert _props(store, "alice") == {}
    assert store.get_last_sync("alice") == DEFAULT_LAST_SYNC


def test_single_file_verified_and_clock_advanced(runner, store):
    runner.handshake("bob")
    write_int(runner.client, 1)
    runner.send_file("a.txt", b"hello")
    runner.finish()

    assert runner.error is None
    report = runner.report
    assert [(f.name, f.verified, f.bytes_received) for f in report.files] == [("a.txt", True, 5)]
    assert report.metadata_updated
    assert (store.root / "bob" / "a.txt").read_bytes() == b"hello"
    stamp = store.get_last_sync("bob")
    assert stamp != DEFAULT_LAST_SYNC
    assert re.match(r"\d{4}-\d\d-\d\d \d\d:\d\d:\d\d$", stamp)
    assert _props(store, "bob") == {"bob.lastSync": stamp}


def test_lowercase_checksum_accepted(runner):
    runner.handshake("bob")
    write_int(runner.client, 1)
    runner.send_file("a.txt", b"hello", checksum=md5_hex(b"hello").lower())
    runner.finish()
    assert runner.report.files[0].verified


def test_checksum_mismatch_is_not_fatal(runner, store):
    runner.handshake("bob")
    write_int(runner.client, 2)
    runner.send_file("a.txt", b"hello", checksum="0" * 32)
    runner.send_file("b.txt", b"world")
    runner.finish()

    assert runner.error is None
    first, second = runner.report.files
    assert not first.verified and "mismatch" in first.reason
    assert second.verified
    assert runner.report.failed == [first]
    assert (store.root / "bob" / "a.txt").read_bytes() == b"hello"
    assert (store.root / "bob" / "b.txt").read_bytes() == b"world"
    # the clock still advances for an attempted batch
    assert runner.report.metadata_updated
    assert store.get_last_sync("bob") != DEFAULT_LAST_SYNC


def test_all_files_failing_still_advances_clock(runner, store):
    runner.handshake("dan")
    write_int(runner.client, 1)
    runner.send_file("x.bin", b"\x00" * 40, checksum="nope")
    runner.finish()
    assert runner.report.failed
    assert store.get_last_sync("dan") != DEFAULT_LAST_SYNC


def test_large_file_is_read_in_buffer_sized_chunks(runner, store, config):
    data = bytes(range(256)) * 20
    runner.handshake("eve")
    write_int(runner.client, 1)
    runner.send_file("big.bin", data)
    runner.finish()
    assert runner.report.files[0].verified
    assert (store.root / "eve" / "big.bin").read_bytes() == data


def test_empty_file(runner, store):
    runner.handshake("eve")
    write_int(runner.client, 1)
    runner.send_file("empty", b"")
    runner.finish()
    assert runner.report.files[0].verified
    assert (store.root / "eve" / "empty").read_bytes() == b""


def test_subdirectory_file_names(runner, store):
    runner.handshake("fay")
    write_int(runner.client, 1)
    runner.send_file("photos/2024/a.jpg", b"jpeg")
    runner.finish()
    assert (store.root / "fay" / "photos" / "2024" / "a.jpg").read_bytes() == b"jpeg"


def test_premature_end_aborts_and_keeps_partial_file(runner, store):
    runner.handshake("gus")
    write_int(runner.client, 1)
    write_utf(runner.client, "part.bin")
    write_long(runner.client, 100)
    send_all(runner.client, b"x" * 40)
    runner.finish()

    assert isinstance(runner.error, TransportError)
    assert runner.session.stage == "receive-file"
    assert runner.session.current_file == "part.bin"
    assert (store.root / "gus" / "part.bin").read_bytes() == b"x" * 40
    assert store.get_last_sync("gus") == DEFAULT_LAST_SYNC


def test_disconnect_before_client_id(runner):
    runner.finish()
    assert isinstance(runner.error, TransportError)
    assert runner.session.client_id is None


def test_negative_file_count_is_protocol_error(runner, store):
    runner.handshake("hal")
    write_int(runner.client, -1)
    runner.finish()
    assert isinstance(runner.error, ProtocolError)
    assert store.get_last_sync("hal") == DEFAULT_LAST_SYNC


def test_unsafe_client_id_ends_session(runner, store):
    write_utf(runner.client, "../escape")
    runner.finish()
    assert isinstance(runner.error, UnsafePathError)
    assert not (store.root.parent / "escape").exists()


def test_unsafe_file_name_is_drained_and_skipped(runner, store):
    runner.handshake("ida")
    write_int(runner.client, 2)
    runner.send_file("../../evil.txt", b"evil")
    runner.send_file("good.txt", b"good")
    runner.finish()

    assert runner.error is None
    bad, good = runner.report.files
    assert not bad.verified and "unsafe" in bad.reason
    assert bad.bytes_received == 4
    assert good.verified
    assert not (store.root / "evil.txt").exists()
    assert not (store.root.parent / "evil.txt").exists()
    assert (store.root / "ida" / "good.txt").read_bytes() == b"good"


def test_unwritable_destination_is_drained_and_skipped(runner, store):
    runner.handshake("ivy")
    write_int(runner.client, 3)
    runner.send_file("sub", b"plain file")
    # "sub" is now a regular file, so "sub/" cannot become a directory
    runner.send_file("sub/a.txt", b"nested")
    runner.send_file("c.txt", b"after")
    runner.finish()

    assert runner.error is None
    first, blocked, last = runner.report.files
    assert first.verified
    assert not blocked.verified and "cannot open destination" in blocked.reason
    assert blocked.bytes_received == len(b"nested")
    assert last.verified
    assert (store.root / "ivy" / "sub").read_bytes() == b"plain file"
    assert (store.root / "ivy" / "c.txt").read_bytes() == b"after"
    assert runner.report.metadata_updated
    assert store.get_last_sync("ivy") != DEFAULT_LAST_SYNC


def test_colon_inside_file_name_is_stored(runner, store):
    runner.handshake("ivy")
    write_int(runner.client, 1)
    runner.send_file("a:b.txt", b"colon")
    runner.finish()

    assert runner.error is None
    assert runner.report.files[0].verified
    assert (store.root / "ivy" / "a:b.txt").read_bytes() == b"colon"


def test_second_session_reports_previous_sync(config, store):
    first = SessionRunner(config, store)
    first.handshake("jan")
    write_int(first.client, 1)
    first.send_file("a", b"a")
    first.finish()
    stamp = store.get_last_sync("jan")

    second = SessionRunner(config, store)
    _, last_sync = second.handshake("jan")
    write_int(second.client, 0)
    second.finish()
    assert last_sync == stamp


def test_socket_closed_after_session(runner):
    runner.handshake("kim")
    write_int(runner.client, 0)
    runner.client.settimeout(2)
    runner._thread.join(5)
    # server side closed → reads see EOF
    assert runner.client.recv(1) == b""
    runner.finish()


def test_handshake_sends_configured_buffer_size(runner):
    write_utf(runner.client, "lee")
    assert read_int(runner.client) == 16
