"""Store: the entry repository on top of a backend.

    store = Store(Path("~/.imag/store").expanduser())
    with store.create("note/foo") as entry:
        entry.content = "hello"
    with store.get("note/foo") as entry:
        entry.namespace("note")["title"] = "Foo"
    for id in store.entries("note"):
        print(id)

Access discipline: every read or write of an entry goes through a checkout
(a FileLockEntry). At most one checkout per id exists at a time; a second
attempt fails with ResourceBusy, or waits when block=True. Distinct ids never
wait on each other: the store lock is only held to book-keep checkouts, never
across backend I/O.

The cache maps StoreId -> _CacheRecord. A record with a token is checked out;
a record without one holds the entry as last loaded or saved, so the next
checkout does not have to re-read it. flush_cache() drops the idle ones.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from imagstore.backend import FSFileAbstraction, InMemoryFileAbstraction
from imagstore.entry import Entry
from imagstore.errors import AlreadyExists, NotFound, ResourceBusy, StoreError, VersionMismatch
from imagstore.storeid import StoreId, to_storeid
from imagstore.version import __version__

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

    from imagstore.backend import FileAbstraction
    from imagstore.header import NamespaceView
    from imagstore.storeid import StoreIdLike

logger = logging.getLogger("imagstore.store")


class _CacheRecord:
    __slots__ = ("id", "token", "entry")

    def __init__(self, id: StoreId) -> None:
        self.id = id
        self.token: object | None = None
        self.entry: Entry | None = None

    @property
    def borrowed(self) -> bool:
        return self.token is not None

    def __repr__(self) -> str:
        state = "borrowed" if self.borrowed else "present"
        return f"<{self.id} {state}>"


class Store:
    """File-backed entry store. See the module docstring for the access rules."""

    def __init__(
        self,
        location: Path | str,
        backend: FileAbstraction | None = None,
        *,
        version: str = __version__,
        implicit_create: bool = True,
        strict_version: bool = True,
    ) -> None:
        self.location = Path(location)
        self.version = version
        self.strict_version = strict_version
        self._backend: FileAbstraction = backend if backend is not None else FSFileAbstraction()
        self._entries: dict[StoreId, _CacheRecord] = {}
        self._cond = threading.Condition()

        if self._backend.exists(self.location):
            msg = f"Store path exists as file: {self.location}"
            raise StoreError(msg)
        if not self._backend.is_dir(self.location):
            if not implicit_create:
                msg = f"Store path does not exist and implicit creation is disabled: {self.location}"
                raise StoreError(msg)
            logger.info("creating store directory %s", self.location)
            self._backend.create_dir_all(self.location)

        logger.debug("store ready at %s (%s backend)", self.location,
                     "durable" if self._backend.durable else "in-memory")

    @classmethod
    def new_inmemory(cls, location: Path | str = "/", **kwargs: Any) -> Store:
        """Store on a fresh InMemoryFileAbstraction; nothing touches disk."""
        return cls(location, InMemoryFileAbstraction(), **kwargs)

    @property
    def path(self) -> Path:
        return self.location

    @property
    def backend(self) -> FileAbstraction:
        return self._backend

    def __repr__(self) -> str:
        return f"Store(location={str(self.location)!r}, entries={list(self._entries.values())!r})"

    # ------------------------------------------------------------------
    # Checkout book-keeping
    # ------------------------------------------------------------------

    def _path_of(self, id: StoreId) -> Path:
        return id._with_base(self.location)

    def _checkout(self, id: StoreId, *, block: bool = False, timeout: float | None = None) -> object:
        """Reserve `id` and return the token that proves it."""
        token = object()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                record = self._entries.get(id)
                if record is None:
                    record = self._entries[id] = _CacheRecord(id)
                if not record.borrowed:
                    record.token = token
                    return token
                if not block:
                    raise ResourceBusy(id)
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise ResourceBusy(id)
                logger.debug("waiting for %s", id)
                self._cond.wait(remaining)

    def _checkin(self, id: StoreId, token: object, *, forget: bool = False) -> None:
        """End the checkout held by `token`. Idle records without data are dropped."""
        with self._cond:
            record = self._entries.get(id)
            if record is not None and record.token is token:
                record.token = None
                if forget or record.entry is None:
                    del self._entries[id]
            self._cond.notify_all()

    def _cached(self, id: StoreId) -> Entry | None:
        with self._cond:
            record = self._entries.get(id)
            return None if record is None or record.entry is None else record.entry.copy()

    def _remember(self, entry: Entry) -> None:
        with self._cond:
            record = self._entries.get(entry.location)
            if record is not None:
                record.entry = entry.copy()

    def _owns(self, handle: FileLockEntry) -> None:
        if handle._token is None:
            msg = f"Entry {handle.location} was already released"
            raise StoreError(msg)
        with self._cond:
            record = self._entries.get(handle.location)
            if record is None or record.token is not handle._token:
                raise ResourceBusy(handle.location)

    def _load(self, id: StoreId) -> Entry | None:
        """Read and parse `id` from the backend; None if nothing is stored."""
        data = self._backend.new_instance(self._path_of(id)).read_bytes()
        if data is None:
            return None
        entry = Entry.from_bytes(id, data)
        if entry.version != self.version:
            if self.strict_version:
                raise VersionMismatch(id, entry.version, self.version)
            logger.warning("%s was written by version %s, running %s", id, entry.version, self.version)
        return entry

    def _write(self, entry: Entry) -> None:
        data = entry.to_bytes()
        instance = self._backend.new_instance(self._path_of(entry.location))
        logger.debug("writing %s (%d bytes) via %r", entry.location, len(data), instance)
        instance.write_bytes(data)

    def _fetch(self, id: StoreId) -> Entry | None:
        """Cached entry, else the stored one (which is then cached)."""
        entry = self._cached(id)
        if entry is None:
            entry = self._load(id)
            if entry is not None:
                self._remember(entry)
        return entry

    # ------------------------------------------------------------------
    # Create / retrieve / get
    # ------------------------------------------------------------------

    def create(self, id: StoreIdLike) -> FileLockEntry:
        """Check out a brand-new entry. AlreadyExists if the id is taken."""
        id = to_storeid(id)
        logger.debug("creating %s", id)
        try:
            token = self._checkout(id)
        except ResourceBusy:
            raise AlreadyExists(id) from None
        try:
            if self._cached(id) is not None or self._backend.exists(self._path_of(id)):
                raise AlreadyExists(id)
        except BaseException:
            self._checkin(id, token)
            raise
        return FileLockEntry(self, Entry.new(id, self.version), token)

    def retrieve(self, id: StoreIdLike, *, block: bool = False, timeout: float | None = None) -> FileLockEntry:
        """Check out `id`, creating a fresh entry if nothing is stored yet.

        A fresh entry only reaches the backend when it is saved.
        """
        id = to_storeid(id)
        logger.debug("retrieving %s", id)
        token = self._checkout(id, block=block, timeout=timeout)
        try:
            entry = self._fetch(id) or Entry.new(id, self.version)
        except BaseException:
            self._checkin(id, token)
            raise
        return FileLockEntry(self, entry, token)

    def get(self, id: StoreIdLike, *, block: bool = False, timeout: float | None = None) -> FileLockEntry:
        """Check out an existing entry; NotFound if nothing is stored.

        An id that names a collection (note/a while note/a/b is stored) is a
        directory, not a missing entry: reading it fails with BackendIOError.
        """
        id = to_storeid(id)
        logger.debug("getting %s", id)
        token = self._checkout(id, block=block, timeout=timeout)
        try:
            entry = self._fetch(id)
            if entry is None:
                raise NotFound(id)
        except BaseException:
            self._checkin(id, token)
            raise
        return FileLockEntry(self, entry, token)

    def get_copy(self, id: StoreIdLike) -> Entry:
        """Detached copy of a stored entry; changes to it are never written."""
        id = to_storeid(id)
        with self._cond:
            record = self._entries.get(id)
            if record is not None and record.borrowed:
                raise ResourceBusy(id)
        entry = self._cached(id) or self._load(id)
        if entry is None:
            raise NotFound(id)
        return entry

    def exists(self, id: StoreIdLike) -> bool:
        """True if `id` is checked out or stored in the backend."""
        id = to_storeid(id)
        with self._cond:
            if id in self._entries:
                return True
        return self._backend.exists(self._path_of(id))

    # ------------------------------------------------------------------
    # Save / release
    # ------------------------------------------------------------------

    def update(self, handle: FileLockEntry) -> None:
        """Write the handle's entry to the backend and keep it checked out.

        The header is verified and serialized before anything is written, so
        a bad header leaves the stored bytes untouched.
        """
        self._owns(handle)
        logger.debug("updating %s", handle.location)
        self._write(handle.entry)
        self._remember(handle.entry)

    save = update

    def release(self, handle: FileLockEntry, *, write: bool = True) -> None:
        """End a checkout, saving first unless write=False.

        If saving fails the entry stays checked out and the error propagates.
        """
        if handle._token is None:
            return
        if write:
            self.update(handle)
        else:
            self._owns(handle)
        logger.debug("releasing %s", handle.location)
        token, handle._token = handle._token, None
        self._checkin(handle.location, token)

    # ------------------------------------------------------------------
    # Delete / move / copy
    # ------------------------------------------------------------------

    def delete(self, id: StoreIdLike) -> None:
        """Remove a stored entry. ResourceBusy while it is checked out."""
        id = to_storeid(id)
        logger.debug("deleting %s", id)
        token = self._checkout(id)
        path = self._path_of(id)
        try:
            if not self._backend.exists(path):
                raise NotFound(id)
            self._backend.remove_file(path)
        finally:
            self._checkin(id, token, forget=True)
        logger.debug("deleted %s", id)

    def move_by_id(self, old_id: StoreIdLike, new_id: StoreIdLike) -> StoreId:
        """Move a stored entry that is not checked out. Returns the new id.

        Links pointing at the old id are not touched.
        """
        old_id, new_id = to_storeid(old_id), to_storeid(new_id)
        logger.debug("moving %s to %s", old_id, new_id)
        if old_id == new_id:
            raise AlreadyExists(new_id)

        old_token = self._checkout(old_id)
        try:
            new_token = self._checkout(new_id)
        except ResourceBusy:
            self._checkin(old_id, old_token)
            raise AlreadyExists(new_id) from None

        moved: Entry | None = None
        try:
            old_path, new_path = self._path_of(old_id), self._path_of(new_id)
            if not self._backend.exists(old_path):
                raise NotFound(old_id)
            if self._backend.exists(new_path):
                raise AlreadyExists(new_id)
            self._backend.rename(old_path, new_path)
            cached = self._cached(old_id)
            moved = cached.copy(new_id) if cached is not None else None
        finally:
            with self._cond:
                if moved is not None:
                    self._entries[new_id].entry = moved
            self._checkin(new_id, new_token)
            self._checkin(old_id, old_token, forget=True)

        logger.debug("moved %s to %s", old_id, new_id)
        return new_id

    move = move_by_id

    def save_to(self, handle: FileLockEntry, new_id: StoreIdLike) -> StoreId:
        """Write a copy of the handle's entry under `new_id`; the handle stays checked out."""
        new_id = to_storeid(new_id)
        self._owns(handle)
        logger.debug("saving %s to %s", handle.location, new_id)
        if new_id == handle.location:
            raise AlreadyExists(new_id)
        try:
            token = self._checkout(new_id)
        except ResourceBusy:
            raise AlreadyExists(new_id) from None
        try:
            if self._cached(new_id) is not None or self._backend.exists(self._path_of(new_id)):
                raise AlreadyExists(new_id)
            copy = handle.entry.copy(new_id)
            self._write(copy)
            self._remember(copy)
        finally:
            self._checkin(new_id, token)
        return new_id

    def save_as(self, handle: FileLockEntry, new_id: StoreIdLike) -> StoreId:
        """Like save_to, then remove the old entry and end the handle's checkout."""
        new_id = self.save_to(handle, new_id)
        old_id = handle.location
        old_path = self._path_of(old_id)
        token, handle._token = handle._token, None
        try:
            if self._backend.exists(old_path):
                self._backend.remove_file(old_path)
        finally:
            self._checkin(old_id, token, forget=True)
        logger.debug("saved %s as %s", old_id, new_id)
        return new_id

    # ------------------------------------------------------------------
    # Enumeration and cache
    # ------------------------------------------------------------------

    def entries(self, namespace: str | None = None) -> Entries:
        """Ids stored in the backend, optionally only below `namespace`."""
        prefix = StoreId.parse(namespace).parts if namespace else ()
        return Entries(self, prefix)

    def flush_cache(self) -> None:
        """Forget every cached entry that is not checked out."""
        with self._cond:
            idle = [id for id, record in self._entries.items() if not record.borrowed]
            for id in idle:
                del self._entries[id]
        logger.debug("flushed %d cache records", len(idle))

    def cache_size(self) -> int:
        with self._cond:
            return len(self._entries)

    def is_borrowed(self, id: StoreIdLike) -> bool:
        id = to_storeid(id)
        with self._cond:
            record = self._entries.get(id)
            return record is not None and record.borrowed


class Entries:
    """Restartable listing of stored ids.

    Every iteration takes a fresh snapshot of the backend. Ids can disappear
    between listing and fetching; fetch them with get() and expect NotFound.
    """

    def __init__(self, store: Store, prefix: tuple[str, ...] = ()) -> None:
        self._store = store
        self._prefix = prefix

    def __iter__(self) -> Iterator[StoreId]:
        store = self._store
        base = store.path
        prefix = base.joinpath(*self._prefix)
        for id in store.backend.ids_below(base, prefix):
            if id.is_in_collection(self._prefix):
                yield id

    def in_collection(self, *parts: str) -> Entries:
        """Narrow the listing to ids below `parts` (relative to the current prefix)."""
        extra = StoreId.parse("/".join(parts)).parts if parts else ()
        return Entries(self._store, self._prefix + extra)

    def into_get_iter(self, *, skip_missing: bool = False) -> Iterator[FileLockEntry]:
        """Check out each listed entry in turn.

        The caller releases every handle. With skip_missing, ids deleted since
        the listing are skipped instead of raising NotFound.
        """
        for id in self:
            try:
                yield self._store.get(id)
            except NotFound:
                if not skip_missing:
                    raise
                logger.debug("%s vanished during iteration", id)

    def __repr__(self) -> str:
        where = "/".join(self._prefix) or "<all>"
        return f"Entries({where})"


class FileLockEntry:
    """A checked-out entry.

    Reads and writes go to the wrapped Entry; nothing reaches the backend
    until update() or release(). As a context manager it releases on exit,
    saving only when the block finished without an exception. If that save
    fails the checkout still ends and the stored bytes are left as they were.
    """

    def __init__(self, store: Store, entry: Entry, token: object) -> None:
        self._store = store
        self._token: object | None = token
        self.entry = entry

    @property
    def location(self) -> StoreId:
        return self.entry.location

    @property
    def header(self) -> dict[str, Any]:
        return self.entry.header

    @header.setter
    def header(self, value: dict[str, Any]) -> None:
        self.entry.header = value

    @property
    def content(self) -> str:
        return self.entry.content

    @content.setter
    def content(self, value: str) -> None:
        self.entry.content = value

    @property
    def released(self) -> bool:
        return self._token is None

    def namespace(self, name: str) -> NamespaceView:
        return self.entry.namespace(name)

    def verify(self) -> None:
        self.entry.verify()

    def to_str(self) -> str:
        return self.entry.to_str()

    def update(self) -> None:
        self._store.update(self)

    save = update

    def release(self, *, write: bool = True) -> None:
        self._store.release(self, write=write)

    def __enter__(self) -> FileLockEntry:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.released:
            return
        if exc_type is not None:
            self._store.release(self, write=False)
            return
        try:
            self._store.release(self)
        except BaseException:
            # a failed save must not keep the id checked out past the block
            self._store.release(self, write=False)
            raise

    def __repr__(self) -> str:
        state = "released" if self.released else "checked out"
        return f"FileLockEntry(store={str(self._store.location)!r}, location={str(self.location)!r}, {state})"
