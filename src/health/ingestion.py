"""Ingestion of errors and deploys reported directly by monitored sites.

Error reports bypass the failure threshold and deploy suppression: a sev-1 or
sev-2 report opens (or joins) the site's ``health_api`` incident immediately.
Deploy reports move ``last_deploy_at`` forward, which starts the suppression
window the classifier honours.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .errors import (
    IncidentConflictError,
    MonitorError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    CheckType,
    DeployEvent,
    ErrorLogEntry,
    Incident,
    MonitoredSite,
    Severity,
    utcnow,
)
from .store import MonitorStore

logger = logging.getLogger(__name__)

# Direct error reports share the incident slot of the health API check
ERROR_TRIGGER_CHECK_TYPE = CheckType.HEALTH_API.value

INCIDENT_SEVERITIES = (Severity.SEV1, Severity.SEV2)


@dataclass
class ErrorReport:
    site_id: str  # external identifier
    severity: str
    type: str
    message: str
    path: str | None = None
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class DeployReport:
    site_id: str  # external identifier
    deploy_id: str
    environment: str
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class IngestResult:
    error_log_id: str
    incident_created: bool = False
    incident_id: str | None = None

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": "Error logged",
            "error_log_id": self.error_log_id,
            "incident_created": self.incident_created,
            "incident_id": self.incident_id,
        }


def _missing(fields: dict[str, Any]) -> list[str]:
    return [name for name, value in fields.items() if not value]


def authorize_site(
    store: MonitorStore, external_id: str, provided_secret: str | None,
) -> MonitoredSite:
    """Resolve an active site by external id and check its shared secret."""
    site = store.get_site_by_external_id(external_id)
    if site is None:
        raise NotFoundError("Site not found", {"site_id": external_id})
    if site.secret and not hmac.compare_digest(site.secret, provided_secret or ""):
        raise UnauthorizedError()
    if not site.is_active:
        raise ValidationError("Site is not active", {"status": site.status.value})
    return site


class ErrorIngestor:
    """Records reported errors and escalates sev-1/sev-2 reports to incidents."""

    def __init__(
        self,
        store: MonitorStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.clock = clock

    def ingest(self, report: ErrorReport, provided_secret: str | None = None) -> IngestResult:
        missing = _missing({
            "site_id": report.site_id,
            "severity": report.severity,
            "type": report.type,
            "message": report.message,
        })
        if missing:
            raise ValidationError("Missing required fields", {"required": missing})

        try:
            severity = Severity(report.severity)
        except ValueError:
            raise ValidationError(
                "Invalid severity. Must be: sev-1, sev-2, sev-3", report.severity,
            ) from None

        site = authorize_site(self.store, report.site_id, provided_secret)
        now = self.clock()

        entry = self.store.insert_error_log(ErrorLogEntry(
            site_id=site.id,
            severity=severity,
            error_type=report.type,
            message=report.message,
            path=report.path,
            metadata=report.metadata or {},
            created_at=report.timestamp or now,
        ))
        logger.info("Error logged for %s: [%s] %s", site.name, severity.value, report.type)

        result = IngestResult(error_log_id=entry.id)
        if severity not in INCIDENT_SEVERITIES:
            return result

        incident = self.store.get_open_incident(site.id, ERROR_TRIGGER_CHECK_TYPE)
        if incident is None:
            try:
                incident = self.store.create_incident(Incident(
                    site_id=site.id,
                    severity=severity,
                    title=f"{severity.label}: {report.type}",
                    description=report.message,
                    trigger_check_type=ERROR_TRIGGER_CHECK_TYPE,
                    trigger_event_ids=[],
                    opened_at=now,
                    updated_at=now,
                ))
                result.incident_created = True
                logger.warning("Incident created for %s: %s", site.name, incident.id)
            except IncidentConflictError:
                incident = self.store.get_open_incident(site.id, ERROR_TRIGGER_CHECK_TYPE)
            except MonitorError:
                logger.exception("Failed to create incident for %s", site.name)
                return result

        if incident is None:
            return result

        result.incident_id = incident.id
        try:
            self.store.link_error_log(entry.id, incident.id)
        except MonitorError:
            logger.exception("Failed to link error log %s to incident %s", entry.id, incident.id)
        return result


class DeployIngestor:
    """Records deploys and opens the site's alert suppression window."""

    def __init__(
        self,
        store: MonitorStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.clock = clock

    def ingest(self, report: DeployReport, provided_secret: str | None = None) -> DeployEvent:
        missing = _missing({
            "site_id": report.site_id,
            "deploy_id": report.deploy_id,
            "environment": report.environment,
        })
        if missing:
            raise ValidationError("Missing required fields", {"required": missing})

        site = authorize_site(self.store, report.site_id, provided_secret)
        now = self.clock()

        try:
            self.store.set_last_deploy(site.id, now)
        except MonitorError:
            logger.exception("Failed to update last_deploy_at for %s", site.name)

        deploy = self.store.insert_deploy_event(DeployEvent(
            site_id=site.id,
            deploy_id=report.deploy_id,
            environment=report.environment,
            metadata=report.metadata or {},
            created_at=report.timestamp or now,
        ))
        logger.info("Deploy recorded for %s: %s", site.name, report.deploy_id)
        return deploy
