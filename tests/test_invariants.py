from __future__ import annotations

import pytest

from tsbridge import invariants
from tsbridge.exceptions import BridgeError, NeverThrown


def test_never_raises_never_thrown_with_env() -> None:
    with pytest.raises(NeverThrown) as excinfo:
        invariants.never("boom", seq=3)
    assert str(excinfo.value) == "boom"
    assert excinfo.value.env == {"seq": 3}
    assert isinstance(excinfo.value, BridgeError)


def test_never_has_a_default_reason() -> None:
    try:
        invariants.never()
    except NeverThrown as exc:
        assert "never()" in str(exc)
    else:
        raise AssertionError("never() returned")


def test_require_not_none() -> None:
    assert invariants.require_not_none("ok") == "ok"
    assert invariants.require_not_none(0) == 0
    with pytest.raises(NeverThrown, match="supervisor missing"):
        invariants.require_not_none(None, reason="supervisor missing")
