from __future__ import annotations

import threading

import pytest

from affiliate_exchange.errors import TransportError
from affiliate_exchange.file_drop import LocalDirectoryFileDrop, TimeoutFileDrop


def test_list_fetch_and_move(tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "a.json").write_bytes(b"{}")
    (tmp_path / "in" / "sub").mkdir()
    drop = LocalDirectoryFileDrop(tmp_path)

    entries = {e.name: e for e in drop.list_files("/in")}
    content = drop.fetch("/in/a.json")
    drop.ensure_directory("/done")
    final = drop.move("/in/a.json", "/done/a.json")

    assert entries["a.json"].is_file
    assert entries["a.json"].size_bytes == 2
    assert not entries["sub"].is_file
    assert content == b"{}"
    assert final == "/done/a.json"
    assert (tmp_path / "done" / "a.json").exists()
    assert not (tmp_path / "in" / "a.json").exists()


def test_move_onto_existing_name_keeps_both(tmp_path):
    (tmp_path / "in").mkdir()
    (tmp_path / "done").mkdir()
    (tmp_path / "in" / "a.json").write_bytes(b"new")
    (tmp_path / "done" / "a.json").write_bytes(b"old")
    drop = LocalDirectoryFileDrop(tmp_path)

    final = drop.move("/in/a.json", "/done/a.json")

    assert final != "/done/a.json"
    assert final.startswith("/done/a_") and final.endswith(".json")
    assert (tmp_path / "done" / "a.json").read_bytes() == b"old"
    assert (tmp_path / final.lstrip("/")).read_bytes() == b"new"


def test_missing_directory_is_transport_error(tmp_path):
    drop = LocalDirectoryFileDrop(tmp_path)

    with pytest.raises(TransportError, match="Failed to list"):
        drop.list_files("/nowhere")


def test_paths_escaping_root_are_refused(tmp_path):
    drop = LocalDirectoryFileDrop(tmp_path / "root")

    with pytest.raises(TransportError, match="escapes"):
        drop.fetch("/../secret.json")


class _BlockingDrop:
    def __init__(self):
        self.release = threading.Event()

    def list_files(self, directory):
        return []

    def fetch(self, remote_path):
        self.release.wait(5)
        return b""

    def move(self, remote_path, dest_path):
        return dest_path

    def ensure_directory(self, path):
        return None


def test_slow_calls_time_out():
    inner = _BlockingDrop()
    with TimeoutFileDrop(inner, timeout_seconds=0.05) as drop:
        try:
            with pytest.raises(TransportError, match="timed out"):
                drop.fetch("/in/a.json")
            assert drop.list_files("/in") == []
        finally:
            inner.release.set()


class _SelectiveDrop(_BlockingDrop):
    def fetch(self, remote_path):
        if "slow" in remote_path:
            self.release.wait(5)
        return remote_path.encode()


def test_hung_calls_do_not_starve_later_calls():
    inner = _SelectiveDrop()
    with TimeoutFileDrop(inner, timeout_seconds=0.05, max_workers=2) as drop:
        try:
            for name in ("/in/slow_1.json", "/in/slow_2.json"):
                with pytest.raises(TransportError, match="timed out"):
                    drop.fetch(name)

            assert drop.fetch("/in/fast.json") == b"/in/fast.json"
        finally:
            inner.release.set()
