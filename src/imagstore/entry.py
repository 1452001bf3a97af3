"""Entry model and the on-disk entry format.

An entry file is UTF-8 text: a TOML header between two `---` lines, then the
content, byte for byte:

    ---
    [imag]
    version = "0.1.0"

    [note]
    title = "foo"
    ---
    hello

The `imag` table with a string `version` is mandatory. Every other top-level
table belongs to whichever module wrote it.
"""

from __future__ import annotations

import copy
import tomllib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import tomli_w

from imagstore.errors import MalformedHeader, VersionMismatch
from imagstore.header import NamespaceView
from imagstore.storeid import StoreId, to_storeid
from imagstore.version import __version__

if TYPE_CHECKING:
    from imagstore.storeid import StoreIdLike

DELIMITER = "---"
MAIN_SECTION = "imag"


def default_header(version: str = __version__) -> dict[str, Any]:
    """Header of a freshly created entry."""
    return {MAIN_SECTION: {"version": version}}


def split_entry_text(text: str, id: StoreId | None = None) -> tuple[dict[str, Any], str]:
    """Split entry text into (header, content).

    Leading blank lines before the opening delimiter are tolerated; anything
    else there is an error. Raises MalformedHeader, never returns half an entry.
    """
    text = text.replace("\r\n", "\n")
    lines = text.split("\n")

    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start == len(lines) or lines[start] != DELIMITER:
        raise MalformedHeader("missing opening '---' line", id)

    end = start + 1
    while end < len(lines) and lines[end] != DELIMITER:
        end += 1
    if end == len(lines):
        raise MalformedHeader("missing closing '---' line", id)

    raw_header = "\n".join(lines[start + 1:end])
    try:
        header = tomllib.loads(raw_header)
    except tomllib.TOMLDecodeError as exc:
        raise MalformedHeader(f"header is not valid TOML ({exc})", id) from exc

    verify_header(header, id)
    content = "\n".join(lines[end + 1:])
    return header, content


def verify_header(header: Any, id: StoreId | None = None) -> None:
    if not isinstance(header, dict):
        raise MalformedHeader("header is not a table", id)
    main = header.get(MAIN_SECTION)
    if main is None:
        raise MalformedHeader("missing [imag] section", id)
    if not isinstance(main, dict):
        raise MalformedHeader("'imag' is not a table", id)
    if "version" not in main:
        raise MalformedHeader("missing imag.version", id)
    if not isinstance(main["version"], str):
        raise MalformedHeader("imag.version is not a string", id)


def render_header(header: dict[str, Any], id: StoreId | None = None) -> str:
    try:
        return tomli_w.dumps(header)
    except TypeError as exc:
        raise MalformedHeader(f"header cannot be written as TOML ({exc})", id) from exc


@dataclass
class Entry:
    """One stored item: location, header table and free-form content."""

    location: StoreId
    header: dict[str, Any] = field(default_factory=default_header)
    content: str = ""

    @classmethod
    def new(cls, location: StoreIdLike, version: str = __version__) -> Entry:
        return cls(to_storeid(location), default_header(version), "")

    @classmethod
    def from_str(cls, location: StoreIdLike, text: str) -> Entry:
        """Parse a complete entry (header included)."""
        loc = to_storeid(location)
        header, content = split_entry_text(text, loc)
        return cls(loc, header, content)

    @classmethod
    def from_bytes(cls, location: StoreIdLike, data: bytes) -> Entry:
        loc = to_storeid(location)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedHeader(f"entry is not valid UTF-8 ({exc})", loc) from exc
        return cls.from_str(loc, text)

    def to_str(self) -> str:
        self.verify()
        header = render_header(self.header, self.location)
        return f"{DELIMITER}\n{header}{DELIMITER}\n{self.content}"

    def to_bytes(self) -> bytes:
        return self.to_str().encode("utf-8")

    @property
    def version(self) -> str:
        return self.header[MAIN_SECTION]["version"]

    def verify(self) -> None:
        """Raise MalformedHeader unless the imag.version invariant holds."""
        verify_header(self.header, self.location)

    def check_version(self, expected: str) -> None:
        found = self.version
        if found != expected:
            raise VersionMismatch(self.location, found, expected)

    def replace_from_buffer(self, text: str) -> None:
        """Replace header and content from full entry text.

        On a parse error neither header nor content is touched.
        """
        header, content = split_entry_text(text, self.location)
        self.header = header
        self.content = content

    def namespace(self, name: str) -> NamespaceView:
        return NamespaceView(self.header, name)

    def copy(self, location: StoreIdLike | None = None) -> Entry:
        loc = self.location if location is None else to_storeid(location)
        return Entry(loc, copy.deepcopy(self.header), self.content)
