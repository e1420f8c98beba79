"""Tests for merging, digests and the server storage layout."""

import asyncio
import hashlib

import pytest

from clouddisk.errors import PathEscapeError
from clouddisk.file.digest import (
    compute_file_digest, digest_bytes, digests_match, verify_file,
)
from clouddisk.file.storage import (
    FileEntry, RangeBuffer, ServerStorage, merge_ranges, part_path,
)


def make_buffers(directory, pieces):
    buffers = []
    for index, data in pieces:
        path = directory / f"buf{index}"
        path.write_bytes(data)
        buffers.append(RangeBuffer(index, path))
    return buffers


# === merge_ranges ===

def test_merge_orders_by_index(tmp_path):
    buffers = make_buffers(tmp_path, [(2, b"cc"), (0, b"aaa"), (1, b"b")])
    destination = tmp_path / "out" / "file.bin"

    assert asyncio.run(merge_ranges(buffers, destination))
    assert destination.read_bytes() == b"aaabcc"


def test_merge_deletes_buffers(tmp_path):
    buffers = make_buffers(tmp_path, [(0, b"x"), (1, b"y")])

    asyncio.run(merge_ranges(buffers, tmp_path / "merged"))

    assert not any(b.path.exists() for b in buffers)
    assert not list(tmp_path.glob("*.merging"))


def test_merge_twice_is_identical(tmp_path):
    pieces = [(0, b"first-"), (1, b"second-"), (2, b"third")]

    first = tmp_path / "a"
    second = tmp_path / "b"
    asyncio.run(merge_ranges(make_buffers(tmp_path, pieces), first))
    asyncio.run(merge_ranges(make_buffers(tmp_path, pieces), second))

    assert first.read_bytes() == second.read_bytes() == b"first-second-third"


def test_merge_replaces_existing_destination(tmp_path):
    destination = tmp_path / "file"
    destination.write_bytes(b"old contents that are longer")

    asyncio.run(merge_ranges(make_buffers(tmp_path, [(0, b"new")]), destination))

    assert destination.read_bytes() == b"new"


def test_merge_failure_leaves_no_destination(tmp_path):
    buffers = make_buffers(tmp_path, [(0, b"ok")])
    buffers.append(RangeBuffer(1, tmp_path / "missing"))
    destination = tmp_path / "file"

    assert not asyncio.run(merge_ranges(buffers, destination))
    assert not destination.exists()
    assert not buffers[0].path.exists()
    assert not list(tmp_path.glob("*.merging"))


def test_merge_no_buffers_creates_empty_file(tmp_path):
    destination = tmp_path / "empty"
    assert asyncio.run(merge_ranges([], destination))
    assert destination.read_bytes() == b""


def test_part_path_is_hidden_sibling(tmp_path):
    assert part_path(tmp_path / "movie.mp4", 3) == tmp_path / ".movie.mp4.part3"


# === digests ===

def test_file_digest_matches_hashlib(tmp_path):
    data = bytes(range(256)) * 5000
    path = tmp_path / "data"
    path.write_bytes(data)

    expected = hashlib.md5(data).hexdigest()
    assert asyncio.run(compute_file_digest(path)) == expected
    assert digest_bytes(data) == expected


def test_digest_comparison_ignores_case():
    digest = digest_bytes(b"hello")
    assert digests_match(digest, digest.upper())
    assert not digests_match(digest, digest_bytes(b"hellO"))


def test_verify_file_keeps_artifact(tmp_path):
    path = tmp_path / "data"
    path.write_bytes(b"payload")

    assert asyncio.run(verify_file(path, digest_bytes(b"payload")))
    assert not asyncio.run(verify_file(path, digest_bytes(b"other")))
    assert path.exists()


# === ServerStorage ===

def test_storage_layout(tmp_path):
    storage = ServerStorage(tmp_path / "data")

    assert storage.files_dir.is_dir()
    assert storage.temp_dir.is_dir()
    assert storage.sessions_dir.is_dir()


def test_listing_nested_tree(tmp_path):
    storage = ServerStorage(tmp_path / "data")
    files = {
        "a.txt": b"1",
        "docs/b.txt": b"22",
        "docs/deep/c.bin": b"333",
        "z/d": b"",
    }
    for name, data in files.items():
        target = storage.files_dir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    (storage.files_dir / "empty_dir").mkdir()

    entries = storage.list_files()

    assert sorted(entries, key=lambda e: e.path) == sorted(
        (FileEntry(name, len(data)) for name, data in files.items()),
        key=lambda e: e.path,
    )
    assert len({e.path for e in entries}) == len(entries)


@pytest.mark.parametrize("remote_path", ["../outside", "docs/../../x", "", "."])
def test_resolve_rejects_escape(tmp_path, remote_path):
    storage = ServerStorage(tmp_path / "data")
    with pytest.raises(PathEscapeError):
        storage.resolve(remote_path)


def test_resolve_strips_leading_slash(tmp_path):
    storage = ServerStorage(tmp_path / "data")
    assert storage.resolve("/docs/a.txt") == (storage.files_dir / "docs/a.txt").resolve()


def test_file_size(tmp_path):
    storage = ServerStorage(tmp_path / "data")
    (storage.files_dir / "f").write_bytes(b"12345")
    (storage.files_dir / "dir").mkdir()

    assert storage.file_size("f") == 5
    assert storage.file_size("dir") is None
    assert storage.file_size("missing") is None


def test_staged_parts_sorted_by_offset(tmp_path):
    storage = ServerStorage(tmp_path / "data")
    session = "0" * 32
    for start in (200, 0, 100):
        part = storage.staged_part_path(session, start)
        part.parent.mkdir(parents=True, exist_ok=True)
        part.write_bytes(b"x")

    assert [start for start, _ in storage.staged_parts(session)] == [0, 100, 200]
    assert storage.discard_session(session)
    assert storage.staged_parts(session) == []
    assert not storage.discard_session(session)


def test_session_id_must_be_hex(tmp_path):
    storage = ServerStorage(tmp_path / "data")
    with pytest.raises(PathEscapeError):
        storage.session_dir("../../files")
