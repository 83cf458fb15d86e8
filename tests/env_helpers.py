from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Mapping

from tsbridge.config import ENV_OVERRIDES


def apply_env(values: Mapping[str, str | None]) -> dict[str, str | None]:
    """Set (or unset, for None) variables and return what they were before."""
    previous = {key: os.environ.get(key) for key in values}
    _write(values)
    return previous


def _write(values: Mapping[str, str | None]) -> None:
    for key, value in values.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@contextmanager
def bridge_env(**values: str | None) -> Iterator[None]:
    """Run with every TSBRIDGE_* override cleared except the given ones.

    Keyword names are the variable names without the prefix, lowercased:
    `bridge_env(log_file="/tmp/x.log")` sets TSBRIDGE_LOG_FILE.
    """
    wanted: dict[str, str | None] = {name: None for name in ENV_OVERRIDES}
    for key, value in values.items():
        name = f"TSBRIDGE_{key.upper()}"
        if name not in ENV_OVERRIDES:
            raise KeyError(name)
        wanted[name] = value
    previous = apply_env(wanted)
    try:
        yield
    finally:
        _write(previous)
