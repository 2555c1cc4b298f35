"""Tests for direct error and deploy ingestion."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.health.classifier import SeverityClassifier
from src.health.errors import (
    NotFoundError,
    PersistenceError,
    UnauthorizedError,
    ValidationError,
)
from src.health.ingestion import (
    DeployIngestor,
    DeployReport,
    ErrorIngestor,
    ErrorReport,
)
from src.health.models import Incident, MonitoredSite, Result, Severity, SiteStatus


@pytest.fixture
def ingestor(store, clock) -> ErrorIngestor:
    return ErrorIngestor(store, clock=clock)


@pytest.fixture
def deploys(store, clock) -> DeployIngestor:
    return DeployIngestor(store, clock=clock)


@pytest.fixture
def secured_site(store) -> MonitoredSite:
    return store.upsert_site(MonitoredSite(
        site_id="locked", name="Locked", primary_domain="https://locked.example",
        secret="s3cret",
    ))


def report(**overrides) -> ErrorReport:
    fields = {
        "site_id": "acme",
        "severity": "sev-2",
        "type": "checkout_error",
        "message": "Payment provider returned 502",
        "path": "/checkout",
    }
    fields.update(overrides)
    return ErrorReport(**fields)


# ── Error ingestion ──────────────────────────────────────────────────────────


class TestErrorIngestion:
    def test_sev2_opens_incident(self, ingestor, store, site, clock, notifier) -> None:
        result = ingestor.ingest(report())

        assert result.incident_created is True
        incident = store.get_incident(result.incident_id)
        assert incident.severity == Severity.SEV2
        assert incident.title == "SEV-2: checkout_error"
        assert incident.description == "Payment provider returned 502"
        assert incident.trigger_check_type == "health_api"
        assert incident.trigger_event_ids == []

        entry = store.get_error_log(result.error_log_id)
        assert entry.processed is True
        assert entry.incident_id == incident.id
        assert entry.path == "/checkout"
        assert notifier.calls == []

        assert result.to_response() == {
            "success": True,
            "message": "Error logged",
            "error_log_id": entry.id,
            "incident_created": True,
            "incident_id": incident.id,
        }

    def test_joins_open_health_api_incident(self, ingestor, store, site) -> None:
        existing = store.create_incident(Incident(
            site_id=site.id, severity=Severity.SEV1, title="SEV-1: Health API Failing",
            description="d", trigger_check_type="health_api", trigger_event_ids=["e1"],
        ))

        result = ingestor.ingest(report(severity="sev-1"))

        assert result.incident_created is False
        assert result.incident_id == existing.id
        assert store.get_error_log(result.error_log_id).incident_id == existing.id
        assert store.get_incident(existing.id).trigger_event_ids == ["e1"]
        assert len(store.list_incidents(site.id)) == 1

    def test_ignores_threshold_and_suppression(self, ingestor, store, site, clock) -> None:
        store.set_last_deploy(site.id, clock.now - timedelta(minutes=1))

        result = ingestor.ingest(report(severity="sev-1"))
        assert result.incident_created is True

    def test_uptime_incident_is_not_reused(self, ingestor, store, site) -> None:
        store.create_incident(Incident(
            site_id=site.id, severity=Severity.SEV1, title="t", description="d",
            trigger_check_type="uptime",
        ))
        result = ingestor.ingest(report())
        assert result.incident_created is True
        assert len(store.list_incidents(site.id)) == 2

    def test_sev3_only_logs(self, ingestor, store, site) -> None:
        result = ingestor.ingest(report(severity="sev-3"))

        assert result.incident_created is False
        assert result.incident_id is None
        entry = store.get_error_log(result.error_log_id)
        assert entry.processed is False
        assert entry.incident_id is None
        assert store.list_incidents() == []

    def test_timestamp_and_metadata_kept(self, ingestor, store, site) -> None:
        ts = datetime(2025, 5, 31, 23, 59, tzinfo=timezone.utc)
        result = ingestor.ingest(report(severity="sev-3", timestamp=ts, metadata={"user": 7}))
        entry = store.get_error_log(result.error_log_id)
        assert entry.created_at == ts
        assert entry.metadata == {"user": 7}

    def test_classifier_appends_to_ingested_incident(self, ingestor, store, site, record_event, notifier, clock) -> None:
        opened = ingestor.ingest(report(severity="sev-1"))

        classifier = SeverityClassifier(store, notifier, clock=clock)
        record_event(site, Result.FAIL, check_type="health_api", minute=1)
        event = record_event(site, Result.FAIL, check_type="health_api", minute=2)
        outcome = classifier.classify(site.id, "health_api", event.id)

        assert outcome.incident_id == opened.incident_id
        assert outcome.incident_created is False
        assert notifier.calls == []

    def test_incident_failure_keeps_log(self, ingestor, store, site, monkeypatch) -> None:
        def broken_create(incident):
            raise PersistenceError("Failed to create incident", "locked")

        monkeypatch.setattr(store, "create_incident", broken_create)
        result = ingestor.ingest(report(severity="sev-1"))

        assert result.incident_id is None
        assert store.get_error_log(result.error_log_id).processed is False

    def test_link_failure_still_reports_incident(self, ingestor, store, site, monkeypatch) -> None:
        def broken_link(error_log_id, incident_id):
            raise PersistenceError("Failed to link error log", "database is locked")

        monkeypatch.setattr(store, "link_error_log", broken_link)
        result = ingestor.ingest(report(severity="sev-1"))

        assert result.incident_created is True
        assert store.get_incident(result.incident_id) is not None
        assert store.get_error_log(result.error_log_id).processed is False

        # a retry joins the same incident instead of opening another
        retry = ingestor.ingest(report(severity="sev-1"))
        assert retry.incident_id == result.incident_id
        assert len(store.list_incidents(site.id)) == 1


class TestErrorIngestionRejects:
    @pytest.mark.parametrize("missing", ["site_id", "severity", "type", "message"])
    def test_missing_field(self, ingestor, site, missing) -> None:
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(report(**{missing: ""}))
        assert exc.value.status_code == 400
        assert exc.value.details == {"required": [missing]}

    def test_invalid_severity(self, ingestor, store, site) -> None:
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(report(severity="critical"))
        assert exc.value.error == "Invalid severity. Must be: sev-1, sev-2, sev-3"

    def test_unknown_site(self, ingestor, store) -> None:
        with pytest.raises(NotFoundError):
            ingestor.ingest(report(site_id="ghost"))

    def test_wrong_secret(self, ingestor, store, secured_site) -> None:
        with pytest.raises(UnauthorizedError) as exc:
            ingestor.ingest(report(site_id="locked"), provided_secret="nope")
        assert exc.value.status_code == 401

    def test_missing_secret(self, ingestor, store, secured_site) -> None:
        with pytest.raises(UnauthorizedError):
            ingestor.ingest(report(site_id="locked"))

    def test_correct_secret(self, ingestor, store, secured_site) -> None:
        result = ingestor.ingest(report(site_id="locked"), provided_secret="s3cret")
        assert result.incident_created is True

    def test_inactive_site(self, ingestor, store, site) -> None:
        site.status = SiteStatus.SUSPENDED
        store.upsert_site(site)
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(report())
        assert exc.value.error == "Site is not active"

    def test_rejected_reports_leave_no_trace(self, ingestor, store, site) -> None:
        with pytest.raises(ValidationError):
            ingestor.ingest(report(severity="bad"))
        assert store.list_incidents() == []


# ── Deploy ingestion ─────────────────────────────────────────────────────────


class TestDeployIngestion:
    def test_sets_last_deploy(self, deploys, store, site, clock) -> None:
        deploy = deploys.ingest(DeployReport(
            site_id="acme", deploy_id="v42", environment="production",
            metadata={"sha": "abc123"},
        ))

        assert deploy.site_id == site.id
        assert deploy.metadata == {"sha": "abc123"}
        assert store.get_site(site.id).last_deploy_at == clock.now

    def test_deploy_starts_suppression(self, deploys, store, site, record_event, clock, notifier) -> None:
        deploys.ingest(DeployReport(site_id="acme", deploy_id="v43", environment="production"))

        classifier = SeverityClassifier(store, notifier, clock=clock)
        record_event(site, Result.FAIL, minute=1)
        event = record_event(site, Result.FAIL, minute=2)
        assert classifier.classify(site.id, "uptime", event.id).suppressed is True

    def test_missing_fields(self, deploys, site) -> None:
        with pytest.raises(ValidationError) as exc:
            deploys.ingest(DeployReport(site_id="acme", deploy_id="", environment=""))
        assert exc.value.details == {"required": ["deploy_id", "environment"]}

    def test_wrong_secret(self, deploys, secured_site) -> None:
        with pytest.raises(UnauthorizedError):
            deploys.ingest(
                DeployReport(site_id="locked", deploy_id="v1", environment="staging"),
                provided_secret="wrong",
            )

    def test_unknown_site(self, deploys, store) -> None:
        with pytest.raises(NotFoundError):
            deploys.ingest(DeployReport(site_id="ghost", deploy_id="v1", environment="staging"))
