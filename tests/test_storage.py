import json
import os
import threading

import pytest

from zassha.errors import InvalidUpload, SessionNotFound, UploadConflict, UploadIncomplete
from zassha.storage import ChunkStore, FileSessionStore, MemorySessionStore, final_name_for, sanitize_token


def _chunks(payload: bytes, chunk_size: int):
    return [payload[i:i + chunk_size] for i in range(0, len(payload), chunk_size)]


@pytest.mark.parametrize("size,chunk_size", [(1, 1), (10, 3), (4096, 1024), (5000, 1024), (7, 100)])
def test_in_order_appends_rebuild_the_file(chunk_store, size, chunk_size):
    payload = os.urandom(size)
    manifest = chunk_store.init("clip.mov", size, chunk_size)
    upload_id = manifest["uploadId"]

    for index, chunk in enumerate(_chunks(payload, chunk_size)):
        assert chunk_store.append(upload_id, index, chunk) == index + 1
    completed = chunk_store.complete(upload_id)

    final_path = chunk_store.final_path(upload_id)
    assert completed.file_name == "clip.mov"
    assert final_path is not None and final_path.suffix == ".mov"
    assert final_path.stat().st_size == size
    assert final_path.read_bytes() == payload


def test_out_of_order_append_reports_expected_index(chunk_store):
    upload_id = chunk_store.init("a.mp4", 30, 10)["uploadId"]
    chunk_store.append(upload_id, 0, b"x" * 10)

    with pytest.raises(UploadConflict) as excinfo:
        chunk_store.append(upload_id, 2, b"x" * 10)
    assert excinfo.value.expected == 1
    assert excinfo.value.body()["expected"] == 1

    assert chunk_store.append(upload_id, excinfo.value.expected, b"y" * 10) == 2


def test_resending_an_accepted_chunk_is_a_conflict(chunk_store):
    upload_id = chunk_store.init("a.mp4", 20, 10)["uploadId"]
    chunk_store.append(upload_id, 0, b"a" * 10)

    with pytest.raises(UploadConflict) as excinfo:
        chunk_store.append(upload_id, 0, b"a" * 10)
    assert excinfo.value.expected == 1

    chunk_store.append(upload_id, 1, b"b" * 10)
    chunk_store.complete(upload_id)
    assert chunk_store.final_path(upload_id).read_bytes() == b"a" * 10 + b"b" * 10


def test_complete_before_all_chunks_never_finalizes(chunk_store, tmp_path):
    upload_id = chunk_store.init("a.mp4", 25, 10)["uploadId"]
    chunk_store.append(upload_id, 0, b"a" * 10)
    chunk_store.append(upload_id, 1, b"b" * 10)

    with pytest.raises(UploadIncomplete):
        chunk_store.complete(upload_id)
    assert chunk_store.final_path(upload_id) is None
    assert not (tmp_path / "sessions" / upload_id / "final.mp4").exists()

    chunk_store.append(upload_id, 2, b"c" * 5)
    chunk_store.complete(upload_id)
    assert chunk_store.final_path(upload_id).stat().st_size == 25


def test_init_rejects_non_positive_size(chunk_store):
    with pytest.raises(InvalidUpload):
        chunk_store.init("a.mp4", 0, 10)
    with pytest.raises(InvalidUpload):
        chunk_store.init("a.mp4", -5, 10)


def test_oversized_and_empty_chunks_do_not_advance(chunk_store):
    upload_id = chunk_store.init("a.mp4", 20, 10)["uploadId"]
    with pytest.raises(InvalidUpload):
        chunk_store.append(upload_id, 0, b"z" * 11)
    with pytest.raises(InvalidUpload):
        chunk_store.append(upload_id, 0, b"")
    assert chunk_store.append(upload_id, 0, b"z" * 10) == 1


def test_unknown_or_unreadable_session_is_not_found(chunk_store, tmp_path):
    with pytest.raises(SessionNotFound):
        chunk_store.append("does-not-exist", 0, b"x")
    with pytest.raises(SessionNotFound):
        chunk_store.complete("../../etc")

    upload_id = chunk_store.init("a.mp4", 10, 10)["uploadId"]
    (tmp_path / "sessions" / upload_id / "manifest.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(SessionNotFound):
        chunk_store.append(upload_id, 0, b"x")
    with pytest.raises(SessionNotFound):
        chunk_store.complete(upload_id)


def test_manifest_tracks_progress(chunk_store, tmp_path):
    upload_id = chunk_store.init("a.mp4", 15, 10)["uploadId"]
    chunk_store.append(upload_id, 0, b"a" * 10)

    manifest = json.loads((tmp_path / "sessions" / upload_id / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["nextIndex"] == 1
    assert manifest["receivedBytes"] == 10
    assert manifest["size"] == 15
    assert manifest["chunkSize"] == 10


def test_promote_falls_back_to_copy_when_rename_fails(chunk_store, monkeypatch):
    upload_id = chunk_store.init("a.webm", 6, 6)["uploadId"]
    chunk_store.append(upload_id, 0, b"abcdef")

    def refuse_rename(src, dst):
        raise OSError("cross-device link")

    monkeypatch.setattr("zassha.storage.os.rename", refuse_rename)
    chunk_store.complete(upload_id)

    session_dir = chunk_store.store.root / upload_id
    assert (session_dir / "final.webm").read_bytes() == b"abcdef"
    assert not (session_dir / "file.part").exists()


def test_reaping_removes_only_old_sessions(tmp_path):
    now = [1000.0]
    store = ChunkStore(FileSessionStore(tmp_path / "sessions"), clock=lambda: now[0])
    old = store.init("old.mp4", 10, 10)["uploadId"]
    now[0] = 5000.0
    fresh = store.init("new.mp4", 10, 10)["uploadId"]
    now[0] = 5100.0

    assert store.reap_expired(0) == []
    assert store.reap_expired(3600) == [old]
    assert store.store.list_sessions() == [fresh]


def test_memory_store_follows_the_same_protocol():
    store = ChunkStore(MemorySessionStore())
    upload_id = store.init("a.mp4", 4, 2)["uploadId"]
    store.append(upload_id, 0, b"ab")
    with pytest.raises(UploadConflict):
        store.append(upload_id, 0, b"ab")
    with pytest.raises(UploadIncomplete):
        store.complete(upload_id)
    store.append(upload_id, 1, b"cd")

    completed = store.complete(upload_id)
    assert completed.location == f"memory://{upload_id}/final.mp4"
    assert store.store.finals[upload_id] == b"abcd"
    assert store.final_path(upload_id) is None


def test_helpers_keep_paths_safe():
    assert sanitize_token("../abc-DEF_1/") == "abc-DEF_1"
    assert final_name_for("C:\\videos\\demo.MOV") == "final.MOV"
    assert final_name_for("no-extension") == "final.mp4"
    assert final_name_for(None) == "final.mp4"


def test_short_chunks_never_finalize_a_truncated_file(chunk_store):
    upload_id = chunk_store.init("a.mp4", 10, 5)["uploadId"]
    chunk_store.append(upload_id, 0, b"x")
    chunk_store.append(upload_id, 1, b"y")

    with pytest.raises(UploadIncomplete) as excinfo:
        chunk_store.complete(upload_id)
    assert (excinfo.value.received, excinfo.value.size) == (2, 10)
    assert chunk_store.final_path(upload_id) is None


def test_appends_past_the_declared_size_are_rejected(chunk_store):
    upload_id = chunk_store.init("a.mp4", 8, 5)["uploadId"]
    chunk_store.append(upload_id, 0, b"01234")

    with pytest.raises(InvalidUpload):
        chunk_store.append(upload_id, 1, b"56789")
    assert chunk_store.append(upload_id, 1, b"567") == 2


def test_completed_upload_cannot_be_overwritten(chunk_store):
    upload_id = chunk_store.init("a.mp4", 10, 5)["uploadId"]
    chunk_store.append(upload_id, 0, b"01234")
    chunk_store.append(upload_id, 1, b"56789")
    chunk_store.complete(upload_id)

    with pytest.raises(InvalidUpload):
        chunk_store.append(upload_id, 2, b"ZZ")
    chunk_store.complete(upload_id)

    session_dir = chunk_store.store.root / upload_id
    assert chunk_store.final_path(upload_id).read_bytes() == b"0123456789"
    assert not (session_dir / "file.part").exists()


def test_promote_keeps_an_existing_final_file(tmp_path):
    store = FileSessionStore(tmp_path / "sessions")
    store.create("s1", {"uploadId": "s1"})
    store.append("s1", b"first")
    store.promote("s1", "final.mp4")
    store.append("s1", b"second")

    assert store.promote("s1", "final.mp4") == str(tmp_path / "sessions" / "s1" / "final.mp4")
    assert (tmp_path / "sessions" / "s1" / "final.mp4").read_bytes() == b"first"


def test_racing_appends_for_one_index_accept_exactly_one(chunk_store):
    upload_id = chunk_store.init("a.mp4", 20, 10)["uploadId"]
    barrier = threading.Barrier(2)
    accepted: list[int] = []
    conflicts: list[int] = []

    def push(payload: bytes):
        barrier.wait()
        try:
            accepted.append(chunk_store.append(upload_id, 0, payload))
        except UploadConflict as exc:
            conflicts.append(exc.expected)

    threads = [threading.Thread(target=push, args=(payload,)) for payload in (b"a" * 10, b"b" * 10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert accepted == [1]
    assert conflicts == [1]
    manifest = chunk_store.store.read_manifest(upload_id)
    assert manifest["nextIndex"] == 1
    assert manifest["receivedBytes"] == 10
