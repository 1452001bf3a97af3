"""Shared fixtures for the imagstore test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from imagstore import FSFileAbstraction, InMemoryFileAbstraction, Store


@pytest.fixture
def mem_store() -> Store:
    """Store on a fresh in-memory backend, rooted at "/"."""
    return Store.new_inmemory("/")


@pytest.fixture
def fs_store(tmp_path: Path) -> Store:
    """Store on the real filesystem below a temporary directory."""
    return Store(tmp_path / "store", FSFileAbstraction())


@pytest.fixture(params=["memory", "fs"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Store:
    """The same tests against both backends."""
    if request.param == "memory":
        return Store(tmp_path / "store", InMemoryFileAbstraction())
    return Store(tmp_path / "store", FSFileAbstraction())


@pytest.fixture(params=["memory", "fs"])
def backend(request: pytest.FixtureRequest):
    if request.param == "memory":
        return InMemoryFileAbstraction()
    return FSFileAbstraction()


def _entry_text(version: str, content: str = "", extra: str = "") -> str:
    return f'---\n[imag]\nversion = "{version}"\n{extra}---\n{content}'


@pytest.fixture
def entry_text():
    """Build a complete entry file as it would sit on disk."""
    return _entry_text
