"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.health.models import (
    CheckType,
    HealthCheck,
    HealthEvent,
    MonitoredSite,
    Result,
    Severity,
)
from src.health.store import MonitorStore


class FakeNotifier:
    """Records notify_incident calls instead of queueing them."""

    def __init__(self, fail: bool = False) -> None:
        self.calls: list[dict] = []
        self.fail = fail

    def notify_incident(self, incident_id, site_id, severity, is_new=True):
        self.calls.append({
            "incident_id": incident_id,
            "site_id": site_id,
            "severity": Severity(severity).value,
            "is_new": is_new,
        })
        if self.fail:
            raise RuntimeError("notifier down")


class FrozenClock:
    """Callable clock whose time tests can move."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store(tmp_path: Path) -> MonitorStore:
    s = MonitorStore(db_path=tmp_path / "test_monitor.db")
    yield s
    s.close()


@pytest.fixture
def site(store: MonitorStore) -> MonitoredSite:
    return store.upsert_site(MonitoredSite(
        site_id="acme",
        name="Acme",
        primary_domain="https://acme.example",
    ))


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_check(store: MonitorStore):
    """Factory: add a health check for a site."""

    def _make(
        site: MonitoredSite,
        check_type: CheckType = CheckType.UPTIME,
        target: str = "/",
        **kwargs,
    ) -> HealthCheck:
        return store.upsert_check(HealthCheck(
            site_id=site.id, check_type=check_type, target=target, **kwargs,
        ))

    return _make


@pytest.fixture
def record_event(store: MonitorStore):
    """Factory: append an event at 2025-06-01 11:<minute> UTC."""

    def _record(
        site: MonitoredSite,
        result: Result,
        check_type: str = "uptime",
        minute: int = 0,
    ) -> HealthEvent:
        return store.append_event(HealthEvent(
            site_id=site.id,
            check_id="check-1",
            check_type=check_type,
            result=result,
            latency_ms=12.0,
            created_at=datetime(2025, 6, 1, 11, minute, tzinfo=timezone.utc),
        ))

    return _record


@pytest.fixture
def failing_notifier() -> FakeNotifier:
    return FakeNotifier(fail=True)
