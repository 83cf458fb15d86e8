from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Sequence

from tsbridge.exceptions import BackendSpawnFailure

logger = logging.getLogger(__name__)

TSSERVER_RELATIVE = Path("node_modules") / "typescript" / "lib" / "tsserver.js"
_NPM_ROOT_TIMEOUT_SECONDS = 10.0

Runner = Callable[..., subprocess.CompletedProcess]
Which = Callable[[str], str | None]


def _global_node_modules(run: Runner) -> Path | None:
    try:
        completed = run(
            ["npm", "root", "-g"],
            capture_output=True,
            text=True,
            timeout=_NPM_ROOT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("npm root -g failed: %s", exc)
        return None
    output = (completed.stdout or "").strip()
    if completed.returncode != 0 or not output:
        return None
    return Path(output)


def candidate_paths(root: Path, *, run: Runner = subprocess.run) -> list[Path]:
    """Places tsserver.js is looked for, most specific first."""
    candidates = [directory / TSSERVER_RELATIVE for directory in (root, *root.parents)]
    global_root = _global_node_modules(run)
    if global_root is not None:
        candidates.append(global_root / "typescript" / "lib" / "tsserver.js")
    return candidates


def find_tsserver(
    root: Path,
    *,
    explicit: str | None = None,
    run: Runner = subprocess.run,
    which: Which = shutil.which,
) -> Path | None:
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_absolute():
            path = root / path
        return path if path.exists() else None
    for candidate in candidate_paths(root, run=run):
        if candidate.is_file():
            logger.info("found tsserver at %s", candidate)
            return candidate
    on_path = which("tsserver")
    return Path(on_path) if on_path else None


def backend_command(
    root: Path,
    *,
    tsserver_path: str | None = None,
    node_path: str | None = None,
    args: Sequence[str] = (),
    run: Runner = subprocess.run,
    which: Which = shutil.which,
) -> list[str]:
    """Build the tsserver spawn command or raise `BackendSpawnFailure`."""
    tsserver = find_tsserver(root, explicit=tsserver_path, run=run, which=which)
    if tsserver is None:
        where = tsserver_path or str(root)
        raise BackendSpawnFailure(
            f"tsserver not found (looked for {where}); install it with `npm install -g typescript`"
        )
    if tsserver.suffix not in {".js", ".cjs", ".mjs"}:
        return [str(tsserver), *args]
    node = node_path or which("node")
    if not node:
        raise BackendSpawnFailure("node executable not found on PATH")
    return [node, str(tsserver), *args]
