from __future__ import annotations

from consentgate.services.admission import plan_limit


def test_plan_limits() -> None:
    assert plan_limit("starter") == (True, 1)
    assert plan_limit("pro") == (True, 5)
    assert plan_limit("enterprise") == (True, None)
    assert plan_limit(" PRO ") == (True, 5)


def test_unknown_plan_is_not_known() -> None:
    assert plan_limit("gold") == (False, 0)
    assert plan_limit(None) == (False, 0)
