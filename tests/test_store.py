"""Tests for Store: checkouts, persistence, move/delete, enumeration.

The `store` fixture runs each test against both backends.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

import pytest

from imagstore import (
    AlreadyExists,
    BackendIOError,
    FSFileAbstraction,
    InMemoryFileAbstraction,
    MalformedHeader,
    NotFound,
    ResourceBusy,
    Store,
    StoreError,
    StoreId,
    VersionMismatch,
)
from imagstore.version import __version__


def _stored(store: Store, id: str) -> bytes | None:
    """Bytes the backend holds for `id`, bypassing the cache."""
    return store.backend.new_instance(store.path.joinpath(*id.split("/"))).read_bytes()


def _put(store: Store, id: str, text: str) -> None:
    store.backend.new_instance(store.path.joinpath(*id.split("/"))).write_bytes(text.encode("utf-8"))


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


class TestOpen:
    def test_creates_missing_root(self, tmp_path):
        store = Store(tmp_path / "a" / "b", FSFileAbstraction())
        assert (tmp_path / "a" / "b").is_dir()
        assert store.path == tmp_path / "a" / "b"

    def test_root_is_a_file(self, tmp_path):
        (tmp_path / "store").write_text("not a dir")
        with pytest.raises(StoreError):
            Store(tmp_path / "store", FSFileAbstraction())

    def test_root_is_a_file_in_memory(self, tmp_path):
        backend = InMemoryFileAbstraction()
        backend.new_instance(tmp_path / "store").write_bytes(b"x")
        with pytest.raises(StoreError):
            Store(tmp_path / "store", backend)

    def test_no_implicit_create(self, tmp_path):
        with pytest.raises(StoreError):
            Store(tmp_path / "missing", FSFileAbstraction(), implicit_create=False)
        assert not (tmp_path / "missing").exists()

    def test_no_implicit_create_existing_root(self, tmp_path):
        store = Store(tmp_path, FSFileAbstraction(), implicit_create=False)
        assert store.path == tmp_path

    def test_in_memory_never_touches_disk(self, tmp_path):
        store = Store.new_inmemory(tmp_path / "mem")
        with store.create("note/foo") as entry:
            entry.content = "x"
        assert not (tmp_path / "mem").exists()
        assert not store.backend.durable


# ---------------------------------------------------------------------------
# Create / retrieve / get
# ---------------------------------------------------------------------------


class TestCreate:
    def test_create_then_get(self, store):
        with store.create("note/foo") as entry:
            entry.content = "hello"
        with store.get("note/foo") as entry:
            assert entry.content == "hello"
            assert entry.header == {"imag": {"version": __version__}}

    def test_stored_text(self, store):
        with store.create("note/foo") as entry:
            entry.content = "hello"
        assert _stored(store, "note/foo") == f'---\n[imag]\nversion = "{__version__}"\n---\nhello'.encode()

    def test_create_twice(self, store):
        store.create("note/foo").release()
        with pytest.raises(AlreadyExists):
            store.create("note/foo")

    def test_create_while_checked_out(self, store):
        handle = store.create("note/foo")
        with pytest.raises(AlreadyExists):
            store.create("note/foo")
        handle.release()

    def test_create_existing_after_flush(self, store):
        store.create("note/foo").release()
        store.flush_cache()
        with pytest.raises(AlreadyExists):
            store.create("note/foo")

    def test_create_discarded(self, store):
        store.create("note/foo").release(write=False)
        assert not store.exists("note/foo")
        assert store.cache_size() == 0

    def test_id_forms(self, store):
        store.create(StoreId.parse("note/a")).release()
        store.create("note//b/").release()
        assert [str(i) for i in store.entries()] == ["note/a", "note/b"]


class TestGet:
    def test_missing(self, store):
        with pytest.raises(NotFound):
            store.get("note/nope")
        assert not store.is_borrowed("note/nope")
        assert store.cache_size() == 0

    def test_busy(self, store):
        handle = store.create("note/foo")
        with pytest.raises(ResourceBusy):
            store.get("note/foo")
        with pytest.raises(ResourceBusy):
            store.retrieve("note/foo")
        handle.release()
        store.get("note/foo").release()

    def test_loads_from_backend(self, store, entry_text):
        _put(store, "note/raw", entry_text(__version__, "from disk\n", '[note]\ntitle = "Raw"\n'))
        with store.get("note/raw") as entry:
            assert entry.content == "from disk\n"
            assert entry.namespace("note")["title"] == "Raw"

    def test_malformed_on_backend(self, store):
        _put(store, "note/bad", "no header here")
        with pytest.raises(MalformedHeader):
            store.get("note/bad")
        assert not store.is_borrowed("note/bad")

    def test_collection_id_is_not_an_entry(self, store):
        store.create("note/a/b").release()
        with pytest.raises(BackendIOError) as excinfo:
            store.get("note/a")
        assert isinstance(excinfo.value.cause, IsADirectoryError)
        assert not store.is_borrowed("note/a")
        assert not store.exists("note/a")

    def test_handle_edits_are_private_until_saved(self, store):
        with store.create("note/foo") as entry:
            entry.content = "v1"
        handle = store.get("note/foo")
        handle.content = "v2"
        handle.release(write=False)
        assert store.get_copy("note/foo").content == "v1"


class TestRetrieve:
    def test_fresh_entry_not_written_until_release(self, store):
        handle = store.retrieve("note/new")
        assert handle.content == ""
        assert handle.header == {"imag": {"version": __version__}}
        assert _stored(store, "note/new") is None
        handle.release()
        assert _stored(store, "note/new") is not None

    def test_existing_entry(self, store):
        with store.create("note/foo") as entry:
            entry.content = "kept"
        with store.retrieve("note/foo") as entry:
            assert entry.content == "kept"


# ---------------------------------------------------------------------------
# Save / release
# ---------------------------------------------------------------------------


class TestSave:
    def test_update_keeps_checkout(self, store):
        handle = store.create("note/foo")
        handle.content = "saved"
        handle.update()
        assert store.is_borrowed("note/foo")
        assert b"saved" in _stored(store, "note/foo")
        with pytest.raises(ResourceBusy):
            store.get_copy("note/foo")
        handle.release()
        assert not store.is_borrowed("note/foo")

    def test_release_is_idempotent(self, store):
        handle = store.create("note/foo")
        handle.release()
        handle.release()
        assert handle.released

    def test_update_after_release(self, store):
        handle = store.create("note/foo")
        handle.release()
        with pytest.raises(StoreError):
            handle.update()

    def test_failed_save_keeps_old_bytes(self, store):
        with store.create("note/foo") as entry:
            entry.content = "orig"
        before = _stored(store, "note/foo")

        handle = store.get("note/foo")
        del handle.header["imag"]
        handle.content = "changed"
        with pytest.raises(MalformedHeader):
            handle.release()
        assert not handle.released
        assert store.is_borrowed("note/foo")
        assert _stored(store, "note/foo") == before

        handle.release(write=False)
        store.flush_cache()
        assert store.get_copy("note/foo").content == "orig"

    def test_exception_in_with_block_discards(self, store):
        with store.create("note/foo") as entry:
            entry.content = "v1"
        with pytest.raises(RuntimeError), store.get("note/foo") as entry:
            entry.content = "v2"
            raise RuntimeError("boom")
        assert not store.is_borrowed("note/foo")
        assert store.get_copy("note/foo").content == "v1"

    def test_failed_save_in_with_block_frees_id(self, store):
        with pytest.raises(MalformedHeader), store.create("note/a") as entry:
            del entry.header["imag"]
        assert not store.is_borrowed("note/a")
        assert not store.exists("note/a")
        with store.create("note/a") as entry:
            entry.content = "second try"
        assert store.get_copy("note/a").content == "second try"

    def test_failed_save_in_with_block_keeps_old_bytes(self, store):
        with store.create("note/foo") as entry:
            entry.content = "orig"
        before = _stored(store, "note/foo")
        with pytest.raises(MalformedHeader), store.get("note/foo") as entry:
            entry.content = "changed"
            entry.header["imag"] = 1
        assert not store.is_borrowed("note/foo")
        assert _stored(store, "note/foo") == before
        store.delete("note/foo")
        assert not store.exists("note/foo")

    def test_header_edits_persist(self, store):
        with store.create("note/foo") as entry:
            entry.namespace("note")["title"] = "Foo"
            entry.namespace("note").insert("meta.words", 3)
        store.flush_cache()
        entry = store.get_copy("note/foo")
        assert entry.header["note"] == {"title": "Foo", "meta": {"words": 3}}


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_blocking_get_waits_for_release(self, store):
        handle = store.create("note/foo")
        handle.content = "first"
        seen: dict[str, str] = {}

        def worker():
            with store.get("note/foo", block=True, timeout=5) as entry:
                seen["content"] = entry.content

        t = threading.Thread(target=worker)
        t.start()
        time.sleep(0.05)
        assert "content" not in seen
        handle.release()
        t.join(5)
        assert seen == {"content": "first"}

    def test_blocking_get_times_out(self, store):
        handle = store.create("note/foo")
        with pytest.raises(ResourceBusy):
            store.get("note/foo", block=True, timeout=0.05)
        handle.release()

    def test_distinct_ids_in_parallel(self, store):
        errors: list[Exception] = []

        def worker(n: int):
            try:
                with store.create(f"note/{n:02d}") as entry:
                    entry.content = str(n)
            except StoreError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        assert errors == []
        assert len(list(store.entries("note"))) == 16
        assert store.get_copy("note/07").content == "7"

    def test_one_create_wins(self, store):
        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                store.create("note/race").release()
                result = "ok"
            except AlreadyExists:
                result = "exists"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)
        assert sorted(outcomes) == ["exists"] * 7 + ["ok"]


# ---------------------------------------------------------------------------
# get_copy / exists / cache
# ---------------------------------------------------------------------------


class TestCopyAndCache:
    def test_get_copy_is_detached(self, store):
        with store.create("note/foo") as entry:
            entry.content = "orig"
        copy = store.get_copy("note/foo")
        copy.content = "changed"
        copy.header["x"] = {"y": 1}
        assert store.get_copy("note/foo").content == "orig"
        assert not store.is_borrowed("note/foo")

    def test_get_copy_missing(self, store):
        with pytest.raises(NotFound):
            store.get_copy("note/nope")

    def test_exists(self, store):
        assert not store.exists("note/foo")
        handle = store.create("note/foo")
        assert store.exists("note/foo")
        handle.release()
        store.flush_cache()
        assert store.exists("note/foo")

    def test_flush_cache(self, store):
        for n in range(3):
            store.create(f"note/{n}").release()
        assert store.cache_size() == 3
        store.flush_cache()
        assert store.cache_size() == 0
        assert store.get_copy("note/1").content == ""

    def test_flush_keeps_checked_out(self, store):
        store.create("note/a").release()
        handle = store.create("note/b")
        store.flush_cache()
        assert store.cache_size() == 1
        assert store.is_borrowed("note/b")
        handle.release()


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


class TestVersion:
    def test_mismatch(self, store, entry_text):
        _put(store, "note/old", entry_text("0.0.1", "old"))
        with pytest.raises(VersionMismatch) as excinfo:
            store.get("note/old")
        assert excinfo.value.found == "0.0.1"
        assert not store.is_borrowed("note/old")
        assert store.cache_size() == 0

    def test_lenient_store_warns(self, store, entry_text, caplog):
        _put(store, "note/old", entry_text("0.0.1", "old"))
        lenient = Store(store.path, store.backend, strict_version=False)
        with caplog.at_level(logging.WARNING, logger="imagstore.store"), lenient.get("note/old") as entry:
            assert entry.content == "old"
            assert entry.entry.version == "0.0.1"
        assert "0.0.1" in caplog.text

    def test_custom_store_version(self, tmp_path):
        store = Store.new_inmemory(tmp_path, version="2.0.0")
        with store.create("note/foo") as entry:
            assert entry.entry.version == "2.0.0"


# ---------------------------------------------------------------------------
# Delete / move / save_to / save_as
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete(self, store):
        store.create("note/foo").release()
        store.delete("note/foo")
        assert not store.exists("note/foo")
        assert store.cache_size() == 0
        with pytest.raises(NotFound):
            store.get("note/foo")

    def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            store.delete("note/foo")

    def test_delete_checked_out(self, store):
        handle = store.create("note/foo")
        handle.update()
        with pytest.raises(ResourceBusy):
            store.delete("note/foo")
        handle.release()
        assert store.exists("note/foo")


class TestMove:
    def test_move_and_enumerate(self, store):
        with store.create("note/foo") as entry:
            entry.content = "x"
        new_id = store.move_by_id("note/foo", "note/bar")
        assert new_id == StoreId.parse("note/bar")
        assert [str(i) for i in store.entries("note")] == ["note/bar"]
        assert store.get_copy("note/bar").content == "x"
        with pytest.raises(NotFound):
            store.get("note/foo")

    def test_move_into_new_collection(self, store):
        store.create("note/foo").release()
        store.move("note/foo", "archive/2024/foo")
        assert [str(i) for i in store.entries()] == ["archive/2024/foo"]

    def test_move_uncached(self, store):
        with store.create("note/foo") as entry:
            entry.content = "x"
        store.flush_cache()
        store.move_by_id("note/foo", "note/bar")
        assert store.get_copy("note/bar").content == "x"

    def test_move_checked_out(self, store):
        handle = store.create("note/foo")
        handle.update()
        with pytest.raises(ResourceBusy):
            store.move_by_id("note/foo", "note/bar")
        handle.release()
        assert not store.exists("note/bar")

    def test_move_onto_existing(self, store):
        with store.create("note/foo") as entry:
            entry.content = "foo"
        with store.create("note/bar") as entry:
            entry.content = "bar"
        with pytest.raises(AlreadyExists):
            store.move_by_id("note/foo", "note/bar")
        assert store.get_copy("note/foo").content == "foo"
        assert store.get_copy("note/bar").content == "bar"

    def test_move_onto_checked_out(self, store):
        store.create("note/foo").release()
        handle = store.retrieve("note/bar")
        with pytest.raises(AlreadyExists):
            store.move_by_id("note/foo", "note/bar")
        handle.release(write=False)
        assert store.exists("note/foo")

    def test_move_missing(self, store):
        with pytest.raises(NotFound):
            store.move_by_id("note/foo", "note/bar")
        assert store.cache_size() == 0

    def test_move_onto_itself(self, store):
        store.create("note/foo").release()
        with pytest.raises(AlreadyExists):
            store.move_by_id("note/foo", "note//foo")


class TestSaveTo:
    def test_save_to(self, store):
        handle = store.create("note/foo")
        handle.content = "x"
        new_id = store.save_to(handle, "note/copy")
        assert str(new_id) == "note/copy"
        assert store.is_borrowed("note/foo")
        assert store.get_copy("note/copy").content == "x"
        handle.release()
        assert [str(i) for i in store.entries()] == ["note/copy", "note/foo"]

    def test_save_to_existing(self, store):
        store.create("note/other").release()
        handle = store.create("note/foo")
        with pytest.raises(AlreadyExists):
            store.save_to(handle, "note/other")
        handle.release()

    def test_save_as(self, store):
        store.create("note/foo").release()
        handle = store.get("note/foo")
        handle.content = "y"
        store.save_as(handle, "note/bar")
        assert handle.released
        assert not store.exists("note/foo")
        assert store.get_copy("note/bar").content == "y"
        assert [str(i) for i in store.entries()] == ["note/bar"]

    def test_save_as_unsaved(self, store):
        handle = store.create("note/draft")
        handle.content = "z"
        store.save_as(handle, "note/final")
        assert [str(i) for i in store.entries()] == ["note/final"]


# ---------------------------------------------------------------------------
# Enumeration
# ---------------------------------------------------------------------------


class TestEntries:
    @pytest.fixture
    def filled(self, store):
        for name in ("note/b", "note/a", "diary/2024/01", "diary/2024/02", "diary/2023/12", "notes/x"):
            store.create(name).release()
        return store

    def test_empty(self, store):
        assert list(store.entries()) == []

    def test_all_sorted(self, filled):
        assert [str(i) for i in filled.entries()] == [
            "diary/2023/12",
            "diary/2024/01",
            "diary/2024/02",
            "note/a",
            "note/b",
            "notes/x",
        ]

    def test_namespace_is_a_whole_component(self, filled):
        assert [str(i) for i in filled.entries("note")] == ["note/a", "note/b"]
        assert list(filled.entries("not")) == []

    def test_in_collection(self, filled):
        ids = filled.entries().in_collection("diary", "2024")
        assert [str(i) for i in ids] == ["diary/2024/01", "diary/2024/02"]
        assert [str(i) for i in filled.entries("diary").in_collection("2023")] == ["diary/2023/12"]

    def test_restartable(self, filled):
        listing = filled.entries("note")
        assert len(list(listing)) == 2
        filled.create("note/c").release()
        assert len(list(listing)) == 3

    def test_unsaved_checkouts_are_not_listed(self, store):
        handle = store.create("note/draft")
        assert list(store.entries()) == []
        handle.release()
        assert [str(i) for i in store.entries()] == ["note/draft"]

    def test_into_get_iter(self, filled):
        seen = []
        for handle in filled.entries("note").into_get_iter():
            seen.append(str(handle.location))
            assert filled.is_borrowed(handle.location)
            handle.release()
        assert seen == ["note/a", "note/b"]

    def test_into_get_iter_vanished(self, store):
        for name in ("note/a", "note/b", "note/c"):
            store.create(name).release()
        it = store.entries("note").into_get_iter(skip_missing=True)
        first = next(it)
        first.release()
        store.delete("note/b")
        rest = list(it)
        assert [str(h.location) for h in rest] == ["note/c"]
        for handle in rest:
            handle.release()

    def test_into_get_iter_vanished_strict(self, store):
        for name in ("note/a", "note/b"):
            store.create(name).release()
        it = store.entries("note").into_get_iter()
        next(it).release()
        store.delete("note/b")
        with pytest.raises(NotFound):
            next(it)


# ---------------------------------------------------------------------------
# Backend equivalence
# ---------------------------------------------------------------------------


def _script(store: Store) -> list[object]:
    """Run a fixed sequence of operations and record what each returned."""
    log: list[object] = []

    def attempt(fn, *args, **kwargs):
        try:
            result = fn(*args, **kwargs)
        except StoreError as exc:
            log.append(type(exc).__name__)
            return None
        log.append(str(result) if isinstance(result, StoreId) else result)
        return result

    with store.create("note/foo") as entry:
        entry.content = "one"
        entry.namespace("note")["n"] = 1
    attempt(store.create, "note/foo")
    attempt(store.get, "note/missing")
    handle = store.get("note/foo")
    attempt(store.get, "note/foo")
    attempt(store.delete, "note/foo")
    handle.content = "two"
    handle.release()
    attempt(store.move_by_id, "note/foo", "archive/foo")
    attempt(store.move_by_id, "note/foo", "archive/foo")
    store.retrieve("note/second").release()
    moved = store.get("archive/foo")
    attempt(store.save_to, moved, "note/second")
    moved.release(write=False)
    store.flush_cache()
    log.append([str(i) for i in store.entries()])
    log.append(store.get_copy("archive/foo").to_str())
    attempt(store.delete, "note/second")
    attempt(store.delete, "note/second")
    log.append(store.cache_size())
    return log


def test_backends_behave_the_same(tmp_path: Path):
    memory = _script(Store(tmp_path / "m", InMemoryFileAbstraction()))
    disk = _script(Store(tmp_path / "f", FSFileAbstraction()))
    assert memory == disk
    assert "AlreadyExists" in memory
    assert "ResourceBusy" in memory
