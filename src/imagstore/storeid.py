"""StoreId: normalized relative path of one entry below the store root.

    StoreId.parse("note//foo/")  ->  StoreId(parts=("note", "foo"))
    str(StoreId.parse("note/foo"))  ->  "note/foo"

The first component is, by convention, the module that owns the entry
("note", "link", "diary", ...). Nothing enforces that.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import PurePath
from typing import TYPE_CHECKING

from imagstore.errors import InvalidId

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

_SEPARATORS = {"/", os.sep}

# Names starting with this are scratch files of an atomic write, never entries.
TMP_PREFIX = ".imagstore-tmp-"


@dataclass(frozen=True, order=True)
class StoreId:
    """Immutable, validated id. Equality and ordering compare components."""

    parts: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.parts:
            raise InvalidId(self.parts, "empty id")
        for part in self.parts:
            _check_component(self.parts, part)

    @classmethod
    def parse(cls, raw: str | PurePath) -> StoreId:
        """Build a StoreId from user or CLI input."""
        text = str(raw)
        if not text.strip():
            raise InvalidId(raw, "empty id")
        if "\x00" in text:
            raise InvalidId(raw, "contains NUL byte")
        if text[0] in _SEPARATORS or PurePath(text).is_absolute():
            raise InvalidId(raw, "absolute path")

        for sep in _SEPARATORS - {"/"}:
            text = text.replace(sep, "/")

        parts: list[str] = []
        for comp in text.split("/"):
            if comp in ("", "."):
                continue
            if comp == "..":
                raise InvalidId(raw, "escapes the store root")
            parts.append(comp)
        if not parts:
            raise InvalidId(raw, "no path components")
        return cls(tuple(parts))

    def __str__(self) -> str:
        return "/".join(self.parts)

    def __repr__(self) -> str:
        return f"StoreId({str(self)!r})"

    @property
    def module(self) -> str:
        return self.parts[0]

    @property
    def name(self) -> str:
        return self.parts[-1]

    def joinpath(self, *more: str) -> StoreId:
        """Return a new id with `more` components appended."""
        extra = StoreId.parse("/".join(more)).parts
        return StoreId(self.parts + extra)

    def is_in_collection(self, colls: Sequence[str]) -> bool:
        """True if the id lives below the collection given as components.

        `note/2024/foo` is in ["note"], ["note", "2024"] and the full id.
        """
        if len(colls) > len(self.parts):
            return False
        return all(a == b for a, b in zip(self.parts, colls, strict=False))

    # Resolving against the store root is only done inside the store and the
    # backends; callers never get to see or reuse the absolute path.

    def _with_base(self, base: Path) -> Path:
        return base.joinpath(*self.parts)

    @classmethod
    def _from_full_path(cls, base: Path, full: Path) -> StoreId:
        try:
            rel = full.relative_to(base)
        except ValueError as exc:
            raise InvalidId(full, f"not below store root {base}") from exc
        return cls(tuple(rel.parts))


StoreIdLike = StoreId | str | PurePath


def to_storeid(value: StoreIdLike) -> StoreId:
    """Accept a StoreId, a string or a relative path."""
    if isinstance(value, StoreId):
        return value
    if isinstance(value, (str, PurePath)):
        return StoreId.parse(value)
    raise InvalidId(value, f"cannot build a store id from {type(value).__name__}")


def module_entry_path(module: str, *parts: str) -> StoreId:
    """Build the id of an entry owned by `module`, e.g. ("note", "foo")."""
    return StoreId.parse("/".join((module, *parts)))


def sorted_ids(ids: Iterable[StoreId]) -> list[StoreId]:
    return sorted(ids, key=str)


def _check_component(parts: tuple[str, ...], part: str) -> None:
    if not isinstance(part, str) or not part:
        raise InvalidId(parts, "empty component")
    if part in (".", ".."):
        raise InvalidId(parts, f"invalid component {part!r}")
    if "\x00" in part or any(sep in part for sep in _SEPARATORS):
        raise InvalidId(parts, f"invalid component {part!r}")
    if part.startswith(TMP_PREFIX):
        raise InvalidId(parts, f"reserved component {part!r}")
