"""imag-store CLI: plumbing access to the entry store.

Commands:
    imag-store init                      write imagrc.toml + create the store dir
    imag-store create ID [-c TEXT]       create an entry (fails if it exists)
    imag-store retrieve ID [-c TEXT]     create-or-load an entry, apply changes
    imag-store get ID                    print an entry
    imag-store header ID PATH            print one header value
    imag-store delete ID                 delete an entry
    imag-store mv OLD NEW                move an entry
    imag-store ids [NAMESPACE]           list ids, one per line

Header edits are given as -H PATH=VALUE; VALUE is read as a TOML value
(42, true, [1, 2], "x") and falls back to a plain string.
"""

from __future__ import annotations

import contextlib
import logging
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import tomli_w

from imagstore import header as _header
from imagstore.config import StoreConfig, init_config, load_config
from imagstore.errors import NotFound, StoreError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from imagstore.store import FileLockEntry, Store

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _State:
    def __init__(self, cfg: StoreConfig, in_memory: bool) -> None:
        self.cfg = cfg
        self.in_memory = in_memory
        self._store: Store | None = None

    @property
    def store(self) -> Store:
        if self._store is None:
            with _store_errors():
                self._store = self.cfg.open_store(in_memory=self.in_memory)
        return self._store


@contextlib.contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except StoreError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_value(raw: str) -> Any:
    try:
        return tomllib.loads(f"v = {raw}")["v"]
    except tomllib.TOMLDecodeError:
        return raw


def _apply_edits(entry: FileLockEntry, content: str | None, headers: tuple[str, ...]) -> None:
    for item in headers:
        path, sep, raw = item.partition("=")
        if not sep or not path.strip():
            msg = f"header edit must look like PATH=VALUE, got {item!r}"
            raise click.BadParameter(msg, param_hint="--header")
        _header.insert(entry.header, path.strip(), _parse_value(raw.strip()))
    if content is not None:
        entry.content = content


def _render_value(value: Any) -> str:
    if isinstance(value, dict):
        return tomli_w.dumps(value).rstrip("\n")
    if isinstance(value, str):
        return value
    return tomli_w.dumps({"v": value}).partition("=")[2].strip()


_content_option = click.option("-c", "--content", default=None, help="Replace the entry content")
_header_option = click.option(
    "-H", "--header", "headers", multiple=True, metavar="PATH=VALUE", help="Set a header value (repeatable)",
)

# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="imagstore")
@click.option("--rtp", type=click.Path(path_type=Path), default=None, help="Runtime path (default: $IMAG_RTP or ~/.imag)")
@click.option("--store", "store_path", type=click.Path(path_type=Path), default=None, help="Alternative store path")
@click.option("--in-memory", is_flag=True, help="Use a throwaway in-memory store")
@click.option("-v", "--verbose", is_flag=True, help="Log info messages")
@click.option("--debug", is_flag=True, help="Log debug messages")
@click.pass_context
def cli(
    ctx: click.Context,
    rtp: Path | None,
    store_path: Path | None,
    in_memory: bool,
    verbose: bool,
    debug: bool,
) -> None:
    """imag-store: read and write store entries."""
    with _store_errors():
        cfg = load_config(rtp, store_path)

    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = cfg.log.level_no
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(message)s")

    ctx.obj = _State(cfg, in_memory)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def init(state: _State) -> None:
    """Write a default imagrc.toml and create the store directory."""
    try:
        config_path = init_config(state.cfg.rtp)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("imagrc.toml already exists, skipping")
    click.echo(f"Store : {state.store.path}")


# ---------------------------------------------------------------------------
# create / retrieve
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("id")
@_content_option
@_header_option
@click.pass_obj
def create(state: _State, id: str, content: str | None, headers: tuple[str, ...]) -> None:
    """Create a new entry ID."""
    with _store_errors(), state.store.create(id) as entry:
        _apply_edits(entry, content, headers)
        click.echo(entry.location)


@cli.command()
@click.argument("id")
@_content_option
@_header_option
@click.pass_obj
def retrieve(state: _State, id: str, content: str | None, headers: tuple[str, ...]) -> None:
    """Load entry ID (creating it if missing) and apply the given changes."""
    with _store_errors(), state.store.retrieve(id) as entry:
        _apply_edits(entry, content, headers)
        click.echo(entry.location)


# ---------------------------------------------------------------------------
# get / header
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("id")
@click.option("--header-only", is_flag=True, help="Print only the header")
@click.option("--content-only", is_flag=True, help="Print only the content")
@click.pass_obj
def get(state: _State, id: str, header_only: bool, content_only: bool) -> None:
    """Print entry ID."""
    if header_only and content_only:
        msg = "--header-only and --content-only are mutually exclusive"
        raise click.UsageError(msg)
    with _store_errors():
        try:
            entry = state.store.get_copy(id)
        except NotFound:
            click.echo("No entry found", err=True)
            raise SystemExit(1) from None

        if header_only:
            click.echo(tomli_w.dumps(entry.header), nl=False)
        elif content_only:
            click.echo(entry.content, nl=False)
        else:
            click.echo(entry.to_str(), nl=False)


@cli.command()
@click.argument("id")
@click.argument("path")
@click.pass_obj
def header(state: _State, id: str, path: str) -> None:
    """Print the header value at dotted PATH of entry ID."""
    with _store_errors():
        entry = state.store.get_copy(id)
        value = _header.read(entry.header, path)
    if value is None:
        click.echo(f"Value not present for entry {id} at {path}", err=True)
        raise SystemExit(1)
    click.echo(_render_value(value))


# ---------------------------------------------------------------------------
# delete / mv
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("id")
@click.pass_obj
def delete(state: _State, id: str) -> None:
    """Delete entry ID."""
    with _store_errors():
        state.store.delete(id)


@cli.command()
@click.argument("old")
@click.argument("new")
@click.pass_obj
def mv(state: _State, old: str, new: str) -> None:
    """Move entry OLD to NEW."""
    with _store_errors():
        new_id = state.store.move_by_id(old, new)
    click.echo(new_id)


# ---------------------------------------------------------------------------
# ids
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("namespace", required=False)
@click.pass_obj
def ids(state: _State, namespace: str | None) -> None:
    """List stored ids, optionally only those below NAMESPACE."""
    with _store_errors():
        for id in state.store.entries(namespace):
            click.echo(id)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
