"""Storage backends: the real filesystem, or a dict that lives in memory.

The store talks to storage only through FileAbstraction (whole-store
operations) and FileAbstractionInstance (bytes of one path). Both variants
report the same errors for the same misuse, so the store never branches on
which one it got:

    FSFileAbstraction()         files below the store root, atomic writes
    InMemoryFileAbstraction()   {path: bytes}, gone when the object is

Missing sources for remove/copy/rename fail with BackendIOError wrapping a
FileNotFoundError in both variants.
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from imagstore.errors import BackendIOError, InvalidId
from imagstore.storeid import TMP_PREFIX, StoreId, sorted_ids

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger("imagstore.backend")


def _is_dir(path: Path) -> IsADirectoryError:
    return IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), str(path))


def _not_found(path: Path) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(path))


@contextlib.contextmanager
def _io(op: str, path: Path) -> Iterator[None]:
    """Turn OSError from the block into BackendIOError."""
    try:
        yield
    except OSError as exc:
        raise BackendIOError(op, path, exc) from exc


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class FileAbstractionInstance(ABC):
    """Handle on the bytes of one path, created by a FileAbstraction.

    Instances are short-lived: the store asks for one per operation and
    drops it afterwards.
    """

    durable: bool = False

    def __init__(self, path: Path) -> None:
        self.path = path

    @abstractmethod
    def read_bytes(self) -> bytes | None:
        """Whole content, or None if nothing is stored at this path."""

    @abstractmethod
    def write_bytes(self, data: bytes) -> None:
        """Replace the whole content. Either all of `data` lands or nothing."""

    def __repr__(self) -> str:
        kind = "durable" if self.durable else "memory"
        return f"{type(self).__name__}({str(self.path)!r}, {kind})"


class FileAbstraction(ABC):
    """Whole-store operations on absolute paths below the store root."""

    durable: bool = False

    @abstractmethod
    def exists(self, path: Path) -> bool:
        """True if an entry file is stored at `path`."""

    @abstractmethod
    def is_dir(self, path: Path) -> bool: ...

    @abstractmethod
    def create_dir_all(self, path: Path) -> None: ...

    @abstractmethod
    def new_instance(self, path: Path) -> FileAbstractionInstance: ...

    @abstractmethod
    def remove_file(self, path: Path) -> None: ...

    @abstractmethod
    def copy(self, src: Path, dst: Path) -> None: ...

    @abstractmethod
    def rename(self, src: Path, dst: Path) -> None: ...

    @abstractmethod
    def _file_paths(self, prefix: Path) -> list[Path]:
        """Snapshot of stored file paths at or below `prefix`."""

    def ids_below(self, base: Path, prefix: Path | None = None) -> Iterator[StoreId]:
        """Yield the ids of all entries at or below `prefix`, sorted by path.

        The listing is taken when iteration starts; later changes are not
        reflected.
        """
        paths = self._file_paths(prefix if prefix is not None else base)
        ids: list[StoreId] = []
        for path in paths:
            try:
                ids.append(StoreId._from_full_path(base, path))
            except InvalidId:
                logger.warning("skipping unaddressable path %s", path)
        yield from sorted_ids(ids)


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class FSFileAbstractionInstance(FileAbstractionInstance):
    durable = True

    def read_bytes(self) -> bytes | None:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise BackendIOError("read", self.path, exc) from exc

    def write_bytes(self, data: bytes) -> None:
        """Write to a temp file next to the target, then rename over it.

        The temp name starts with TMP_PREFIX, which StoreId refuses, so a
        listing can skip it without hiding a real entry.
        """
        tmp = self.path.with_name(f"{TMP_PREFIX}{uuid.uuid4().hex[:8]}-{self.path.name}")
        with _io("write", self.path):
            self.path.parent.mkdir(parents=True, exist_ok=True)
            try:
                with tmp.open("wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                tmp.replace(self.path)
            except BaseException:
                with contextlib.suppress(OSError):
                    tmp.unlink()
                raise


class FSFileAbstraction(FileAbstraction):
    """Entries are plain files; directories are created on demand."""

    durable = True

    def exists(self, path: Path) -> bool:
        return path.is_file()

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def create_dir_all(self, path: Path) -> None:
        with _io("mkdir", path):
            path.mkdir(parents=True, exist_ok=True)

    def new_instance(self, path: Path) -> FileAbstractionInstance:
        return FSFileAbstractionInstance(path)

    def remove_file(self, path: Path) -> None:
        with _io("remove", path):
            path.unlink()

    def copy(self, src: Path, dst: Path) -> None:
        with _io("copy", src):
            if not src.is_file():
                raise _not_found(src)
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)

    def rename(self, src: Path, dst: Path) -> None:
        with _io("rename", src):
            if not src.is_file():
                raise _not_found(src)
            dst.parent.mkdir(parents=True, exist_ok=True)
            src.replace(dst)

    def _file_paths(self, prefix: Path) -> list[Path]:
        if prefix.is_file():
            return [prefix]
        if not prefix.is_dir():
            return []
        found: list[Path] = []
        with _io("list", prefix):
            for dirpath, dirnames, filenames in os.walk(prefix):
                dirnames.sort()
                for name in sorted(filenames):
                    if name.startswith(TMP_PREFIX):
                        logger.debug("skipping temp file %s/%s", dirpath, name)
                        continue
                    found.append(Path(dirpath) / name)
        return found


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryFileAbstractionInstance(FileAbstractionInstance):
    durable = False

    def __init__(self, path: Path, backend: InMemoryFileAbstraction) -> None:
        super().__init__(path)
        self._backend = backend

    def read_bytes(self) -> bytes | None:
        with self._backend._lock:
            if self.path in self._backend._dirs:
                raise BackendIOError("read", self.path, _is_dir(self.path))
            return self._backend._files.get(self.path)

    def write_bytes(self, data: bytes) -> None:
        with self._backend._lock:
            self._backend._check_writable("write", self.path)
            self._backend._add_parents(self.path)
            self._backend._files[self.path] = bytes(data)


class InMemoryFileAbstraction(FileAbstraction):
    """Path -> bytes map for tests; nothing outlives the object.

    Directories are implicit: writing a path registers all its parents, so
    is_dir() answers like the filesystem would.
    """

    durable = False

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._files: dict[Path, bytes] = {}
        self._dirs: set[Path] = set()

    def _add_parents(self, path: Path) -> None:
        self._dirs.update(path.parents)

    def _check_writable(self, op: str, path: Path) -> None:
        # Caller holds the lock. Same refusals as the filesystem: no file
        # over a directory, no file below a file.
        if path in self._dirs:
            raise BackendIOError(op, path, _is_dir(path))
        for parent in path.parents:
            if parent in self._files:
                raise BackendIOError(
                    op, path, NotADirectoryError(errno.ENOTDIR, os.strerror(errno.ENOTDIR), str(parent)),
                )

    def exists(self, path: Path) -> bool:
        with self._lock:
            return path in self._files

    def is_dir(self, path: Path) -> bool:
        with self._lock:
            return path in self._dirs

    def create_dir_all(self, path: Path) -> None:
        with self._lock:
            if path in self._files:
                raise BackendIOError(
                    "mkdir", path, FileExistsError(errno.EEXIST, os.strerror(errno.EEXIST), str(path)),
                )
            self._dirs.add(path)
            self._add_parents(path)

    def new_instance(self, path: Path) -> FileAbstractionInstance:
        return InMemoryFileAbstractionInstance(path, self)

    def remove_file(self, path: Path) -> None:
        with self._lock:
            if self._files.pop(path, None) is None:
                raise BackendIOError("remove", path, _not_found(path))

    def copy(self, src: Path, dst: Path) -> None:
        with self._lock:
            data = self._files.get(src)
            if data is None:
                raise BackendIOError("copy", src, _not_found(src))
            self._check_writable("copy", dst)
            self._add_parents(dst)
            self._files[dst] = data

    def rename(self, src: Path, dst: Path) -> None:
        with self._lock:
            if src not in self._files:
                raise BackendIOError("rename", src, _not_found(src))
            self._check_writable("rename", dst)
            self._add_parents(dst)
            self._files[dst] = self._files.pop(src)

    def _file_paths(self, prefix: Path) -> list[Path]:
        with self._lock:
            paths = list(self._files)
        return [p for p in paths if p == prefix or prefix in p.parents]

    def snapshot(self) -> dict[Path, bytes]:
        """Copy of the current path -> bytes map."""
        with self._lock:
            return dict(self._files)
