from __future__ import annotations

import pytest

from consentgate.workers.provision_worker import build_cron_jobs, parse_cron_minutes


def test_parse_cron_minutes() -> None:
    assert parse_cron_minutes("0,15,30,45") == {0, 15, 30, 45}
    assert parse_cron_minutes(" 5, 35 ") == {5, 35}


def test_parse_cron_minutes_rejects_out_of_range() -> None:
    with pytest.raises(ValueError):
        parse_cron_minutes("0,60")


def test_sweep_cron_only_under_delayed_policy(monkeypatch) -> None:
    from consentgate.core.config import get_settings

    monkeypatch.setenv("ORPHAN_CLEANUP_POLICY", "manual")
    get_settings.cache_clear()
    assert build_cron_jobs() == []
    monkeypatch.setenv("ORPHAN_CLEANUP_POLICY", "delayed")
    get_settings.cache_clear()
    assert len(build_cron_jobs()) == 1
