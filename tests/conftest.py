from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import pytest

from tests.env_helpers import bridge_env


@pytest.fixture
def clean_env():
    # Developer shells may export TSBRIDGE_* overrides.
    with bridge_env():
        yield


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    return root
