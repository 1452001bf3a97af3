"""Exception types raised by the store.

Every failure the store reports is a StoreError subclass, so callers can
catch the whole family or single out the kind they can recover from:

    try:
        entry = store.get("note/foo")
    except NotFound:
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imagstore.storeid import StoreId


class StoreError(Exception):
    """Base class for all store failures."""


class ConfigError(StoreError):
    """imagrc.toml holds a value the store cannot use."""


class InvalidId(StoreError):
    """A string cannot be turned into a StoreId."""

    def __init__(self, raw: object, reason: str) -> None:
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid store id {raw!r}: {reason}")


class NotFound(StoreError):
    def __init__(self, id: StoreId | str) -> None:
        self.id = id
        super().__init__(f"Entry not found: {id}")


class AlreadyExists(StoreError):
    def __init__(self, id: StoreId | str) -> None:
        self.id = id
        super().__init__(f"Entry already exists: {id}")


class ResourceBusy(StoreError):
    """The entry is checked out by another holder."""

    def __init__(self, id: StoreId | str) -> None:
        self.id = id
        super().__init__(f"Entry already borrowed: {id}")


class MalformedHeader(StoreError):
    """Entry text is missing its delimiters, or the header is invalid."""

    def __init__(self, reason: str, id: StoreId | str | None = None) -> None:
        self.id = id
        self.reason = reason
        where = f" in {id}" if id is not None else ""
        super().__init__(f"Malformed header{where}: {reason}")


class VersionMismatch(StoreError):
    def __init__(self, id: StoreId | str | None, found: str, expected: str) -> None:
        self.id = id
        self.found = found
        self.expected = expected
        super().__init__(
            f"Version mismatch in {id}: entry has {found}, store runs {expected}"
        )


class HeaderPathError(StoreError):
    """A dotted header path runs through a value that is not a table."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Header path {path!r}: {reason}")


class BackendIOError(StoreError):
    """The storage backend failed; the native error is kept as .cause."""

    def __init__(self, op: str, path: object, cause: BaseException | None = None) -> None:
        self.op = op
        self.path = path
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{op} failed for {path}{detail}")
