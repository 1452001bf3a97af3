"""Dotted-path access to entry headers.

A header is a plain dict parsed from TOML. Paths address nested tables:

    read(header, "imag.version")            -> "0.1.0"
    insert(header, "diary.date.year", 2024)  # creates [diary.date] on the way
    delete(header, "diary.date")             -> {"year": 2024}

Each top-level key is a namespace owned by one module. NamespaceView hands a
module a mapping over its own table only; this is a convenience, the store
itself never checks who writes where.
"""

from __future__ import annotations

from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any

from imagstore.errors import HeaderPathError

if TYPE_CHECKING:
    from collections.abc import Iterator

_MISSING = object()


def split_path(path: str) -> list[str]:
    keys = path.split(".")
    if not path or any(not k for k in keys):
        raise HeaderPathError(path, "empty key")
    return keys


def _walk(header: dict[str, Any], path: str, keys: list[str], *, create: bool) -> dict[str, Any] | None:
    table = header
    for depth, key in enumerate(keys):
        value = table.get(key, _MISSING)
        if value is _MISSING:
            if not create:
                return None
            value = table[key] = {}
        elif not isinstance(value, dict):
            where = ".".join(keys[: depth + 1])
            raise HeaderPathError(path, f"{where} is not a table")
        table = value
    return table


def read(header: dict[str, Any], path: str, default: Any = None) -> Any:
    """Return the value at `path`, or `default` when any key is absent."""
    *parents, last = split_path(path)
    table = _walk(header, path, parents, create=False)
    if table is None:
        return default
    return table.get(last, default)


def has(header: dict[str, Any], path: str) -> bool:
    return read(header, path, _MISSING) is not _MISSING


def insert(header: dict[str, Any], path: str, value: Any) -> Any:
    """Set `path` to `value`, returning the previous value (or None)."""
    *parents, last = split_path(path)
    table = _walk(header, path, parents, create=True)
    assert table is not None
    old = table.get(last)
    table[last] = value
    return old


def delete(header: dict[str, Any], path: str) -> Any:
    """Remove `path`, returning the removed value (or None if absent)."""
    *parents, last = split_path(path)
    table = _walk(header, path, parents, create=False)
    if table is None:
        return None
    return table.pop(last, None)


class NamespaceView(MutableMapping[str, Any]):
    """Mapping over one top-level header table.

    The table is created lazily on first write, so looking at a namespace
    never changes the serialized entry.
    """

    def __init__(self, header: dict[str, Any], namespace: str) -> None:
        if not namespace or "." in namespace:
            raise HeaderPathError(namespace, "namespace must be a single key")
        self._header = header
        self.namespace = namespace

    def _table(self, *, create: bool = False) -> dict[str, Any]:
        table = self._header.get(self.namespace)
        if table is None:
            if not create:
                return {}
            table = self._header[self.namespace] = {}
        if not isinstance(table, dict):
            raise HeaderPathError(self.namespace, "namespace is not a table")
        return table

    def __getitem__(self, key: str) -> Any:
        return self._table()[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._table(create=True)[key] = value

    def __delitem__(self, key: str) -> None:
        del self._table()[key]

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._table()))

    def __len__(self) -> int:
        return len(self._table())

    def read(self, path: str, default: Any = None) -> Any:
        return read(self._table(), path, default)

    def insert(self, path: str, value: Any) -> Any:
        return insert(self._table(create=True), path, value)

    def __repr__(self) -> str:
        return f"NamespaceView({self.namespace!r}, {self._table()!r})"
