from __future__ import annotations

import pytest

from consentgate.domain.proxy_status import ProxyStatus, effective_status, map_backend_status


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("CREATE_COMPLETE", ProxyStatus.CREATE_COMPLETE),
        ("UPDATE_COMPLETE", ProxyStatus.CREATE_COMPLETE),
        ("CREATE_IN_PROGRESS", ProxyStatus.CREATE_IN_PROGRESS),
        ("CREATE_FAILED", ProxyStatus.CREATE_FAILED),
        ("ROLLBACK_IN_PROGRESS", ProxyStatus.CREATE_FAILED),
        ("ROLLBACK_COMPLETE", ProxyStatus.CREATE_FAILED),
        ("UPDATE_ROLLBACK_COMPLETE", ProxyStatus.CREATE_FAILED),
        ("DELETE_IN_PROGRESS", ProxyStatus.DELETE_IN_PROGRESS),
        ("DELETE_COMPLETE", ProxyStatus.DELETE_COMPLETE),
        ("DELETE_FAILED", ProxyStatus.DELETE_FAILED),
        (" create_complete ", ProxyStatus.CREATE_COMPLETE),
    ],
)
def test_map_backend_status(raw: str, expected: ProxyStatus) -> None:
    assert map_backend_status(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "REVIEW", "IMPORT_SOMETHING"])
def test_map_backend_status_unknown_values_carry_no_decision(raw: str | None) -> None:
    assert map_backend_status(raw) is None


def test_effective_status_reports_disabled_over_stack_status() -> None:
    assert effective_status("CREATE_COMPLETE", True) == "DISABLED"
    assert effective_status("CREATE_COMPLETE", False) == "CREATE_COMPLETE"
