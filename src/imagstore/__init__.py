"""File-based entry store: one TOML-headed text file per entry.

Layout:
    <store root>/
        <module>/
            <name>          # one entry; StoreId "<module>/<name>"
            <sub>/<name>    # ids may nest: "<module>/<sub>/<name>"

Entry file:
    ---
    [imag]
    version = "0.1.0"     # mandatory, checked on load
    [<module>]            # one table per module that touched the entry
    ...
    ---
    <content, byte for byte>

Concurrency: one checkout per id at a time inside one process (see store.py).
Two processes on the same root get no locking guarantees.
"""

from imagstore.backend import (
    FileAbstraction,
    FileAbstractionInstance,
    FSFileAbstraction,
    InMemoryFileAbstraction,
)
from imagstore.config import StoreConfig, init_config, load_config
from imagstore.entry import Entry
from imagstore.errors import (
    AlreadyExists,
    BackendIOError,
    ConfigError,
    HeaderPathError,
    InvalidId,
    MalformedHeader,
    NotFound,
    ResourceBusy,
    StoreError,
    VersionMismatch,
)
from imagstore.header import NamespaceView
from imagstore.store import Entries, FileLockEntry, Store
from imagstore.storeid import StoreId, module_entry_path
from imagstore.version import __version__

__all__ = [
    "AlreadyExists",
    "BackendIOError",
    "ConfigError",
    "Entries",
    "Entry",
    "FSFileAbstraction",
    "FileAbstraction",
    "FileAbstractionInstance",
    "FileLockEntry",
    "HeaderPathError",
    "InMemoryFileAbstraction",
    "InvalidId",
    "MalformedHeader",
    "NamespaceView",
    "NotFound",
    "ResourceBusy",
    "Store",
    "StoreConfig",
    "StoreError",
    "StoreId",
    "VersionMismatch",
    "__version__",
    "init_config",
    "load_config",
    "module_entry_path",
]
