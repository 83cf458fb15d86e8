from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from tsbridge import __version__
from tsbridge.config import load_settings
from tsbridge.exceptions import BackendSpawnFailure, ConfigError
from tsbridge.router import MessageWriter
from tsbridge.schema import BridgeSettings, LoggingSettings
from tsbridge.server import BridgeServer, default_command_builder

app = typer.Typer(add_completion=False)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_STDIN_LIMIT = 16 * 1024 * 1024


def _cli_overrides(
    *,
    tsserver: Optional[str] = None,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
) -> dict[str, dict[str, object]]:
    overrides: dict[str, dict[str, object]] = {}
    if tsserver:
        overrides.setdefault("backend", {})["tsserver_path"] = tsserver
    if log_level:
        overrides.setdefault("logging", {})["level"] = log_level
    if log_file is not None:
        overrides.setdefault("logging", {})["file"] = str(log_file)
    return overrides


def configure_logging(settings: LoggingSettings) -> None:
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    # stdout carries the protocol; logs go to stderr or a file.
    if settings.file:
        handler: logging.Handler = logging.FileHandler(settings.file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=[handler], force=True)


def _load_or_exit(root: Path, config: Optional[Path], overrides: dict[str, dict[str, object]]) -> BridgeSettings:
    try:
        return load_settings(root, config, cli_overrides=overrides)
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)


async def _connect_stdio() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=_STDIN_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
    transport, writer_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout.buffer
    )
    writer = asyncio.StreamWriter(transport, writer_protocol, reader, loop)
    return reader, writer


async def _serve_stdio(root: Path, config: Optional[Path], overrides: dict[str, dict[str, object]]) -> int:
    reader, writer = await _connect_stdio()
    server = BridgeServer(
        MessageWriter(writer),
        root=root,
        config_path=config,
        cli_overrides=overrides,
    )
    return await server.serve(reader)


@app.command()
def serve(
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    tsserver: Optional[str] = typer.Option(None, "--tsserver"),
    log_level: Optional[str] = typer.Option(None, "--log-level"),
    log_file: Optional[Path] = typer.Option(None, "--log-file"),
) -> None:
    """Run the language server over stdio."""
    root = root.resolve()
    overrides = _cli_overrides(tsserver=tsserver, log_level=log_level, log_file=log_file)
    settings = _load_or_exit(root, config, overrides)
    configure_logging(settings.logging)
    logging.getLogger(__name__).info("tsbridge %s serving %s", __version__, root)
    code = asyncio.run(_serve_stdio(root, config, overrides))
    raise typer.Exit(code=code)


@app.command()
def locate(
    root: Path = typer.Option(Path("."), "--root"),
    config: Optional[Path] = typer.Option(None, "--config"),
    tsserver: Optional[str] = typer.Option(None, "--tsserver"),
) -> None:
    """Print the command used to spawn tsserver."""
    root = root.resolve()
    settings = _load_or_exit(root, config, _cli_overrides(tsserver=tsserver))
    try:
        command = default_command_builder(root, settings)
    except BackendSpawnFailure as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1)
    typer.echo(" ".join(command))


@app.command()
def version() -> None:
    typer.echo(__version__)
