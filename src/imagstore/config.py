"""StoreConfig: runtime-path config for the entry store.

Default layout (the "runtime path", rtp):

    ~/.imag/              # or $IMAG_RTP, or --rtp
        imagrc.toml       # optional; defaults apply when missing
        store/            # entries, one file each
            note/
                foo
            diary/
                2024/...

imagrc.toml example:

    [store]
    # path = "store"            # default, relative to the rtp
    implicit-create = true      # create the store directory if missing
    backend = "fs"              # "fs" or "memory"
    strict-version = true       # refuse entries written by another version

    [log]
    level = "warning"           # debug | info | warning | error
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from imagstore.backend import FSFileAbstraction, InMemoryFileAbstraction
from imagstore.errors import ConfigError
from imagstore.store import Store

_CONFIG_FILENAME = "imagrc.toml"
_DEFAULT_RTP = "~/.imag"
_DEFAULT_STORE_DIR = "store"
_RTP_ENV = "IMAG_RTP"

_BACKENDS = ("fs", "memory")
_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class StoreSection:
    path: Path = field(default_factory=Path)
    implicit_create: bool = True
    backend: str = "fs"
    strict_version: bool = True


@dataclass
class LogSection:
    level: str = "warning"

    @property
    def level_no(self) -> int:
        return _LOG_LEVELS[self.level]


@dataclass
class StoreConfig:
    """Resolved configuration for one runtime path."""

    rtp: Path
    store: StoreSection = field(default_factory=StoreSection)
    log: LogSection = field(default_factory=LogSection)

    @property
    def config_path(self) -> Path:
        return self.rtp / _CONFIG_FILENAME

    def open_store(self, *, in_memory: bool = False) -> Store:
        """Build a Store from this config (in_memory overrides the backend)."""
        use_memory = in_memory or self.store.backend == "memory"
        backend = InMemoryFileAbstraction() if use_memory else FSFileAbstraction()
        return Store(
            self.store.path,
            backend,
            implicit_create=self.store.implicit_create,
            strict_version=self.store.strict_version,
        )


def _bool(section: dict[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        msg = f"{_CONFIG_FILENAME}: {key} must be true or false, got {value!r}"
        raise ConfigError(msg)
    return value


def _table(raw: dict[str, Any], key: str, config_path: Path) -> dict[str, Any]:
    section = raw.get(key, {})
    if not isinstance(section, dict):
        msg = f"{config_path}: [{key}] must be a table, got {section!r}"
        raise ConfigError(msg)
    return section


def resolve_rtp(rtp: Path | str | None = None) -> Path:
    """Explicit argument, then $IMAG_RTP, then ~/.imag."""
    if rtp is not None:
        return Path(rtp).expanduser()
    env = os.environ.get(_RTP_ENV)
    if env:
        return Path(env).expanduser()
    return Path(_DEFAULT_RTP).expanduser()


def load_config(rtp: Path | str | None = None, store_path: Path | str | None = None) -> StoreConfig:
    """Load imagrc.toml from the runtime path. store_path overrides [store] path."""
    rtp_path = resolve_rtp(rtp)
    config_path = rtp_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open("rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            msg = f"{config_path}: {exc}"
            raise ConfigError(msg) from exc

    store_section = _table(raw, "store", config_path)
    log_section = _table(raw, "log", config_path)

    raw_path = store_section.get("path", _DEFAULT_STORE_DIR)
    if not isinstance(raw_path, str):
        msg = f"{config_path}: store path must be a string, got {raw_path!r}"
        raise ConfigError(msg)
    path = Path(store_path or raw_path).expanduser()
    if not path.is_absolute():
        path = rtp_path / path

    backend = store_section.get("backend", "fs")
    if backend not in _BACKENDS:
        msg = f"{config_path}: unknown store backend {backend!r} (expected one of {', '.join(_BACKENDS)})"
        raise ConfigError(msg)

    level = log_section.get("level", "warning")
    if not isinstance(level, str) or level.lower() not in _LOG_LEVELS:
        msg = f"{config_path}: unknown log level {level!r}"
        raise ConfigError(msg)

    return StoreConfig(
        rtp=rtp_path,
        store=StoreSection(
            path=path,
            implicit_create=_bool(store_section, "implicit-create", True),
            backend=backend,
            strict_version=_bool(store_section, "strict-version", True),
        ),
        log=LogSection(level=level.lower()),
    )


def init_config(rtp: Path) -> Path:
    """Write a default imagrc.toml at rtp. Raises if already exists."""
    config_path = rtp / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"{_CONFIG_FILENAME} already exists at {config_path}"
        raise FileExistsError(msg)

    rtp.mkdir(parents=True, exist_ok=True)
    content = """\
[store]
# path = "store"            # default, relative to the runtime path
implicit-create = true      # create the store directory when missing
# backend = "fs"            # "fs" or "memory" (nothing is persisted)
# strict-version = true     # refuse entries written by another version

[log]
level = "warning"           # debug | info | warning | error
"""
    config_path.write_text(content)
    return config_path
