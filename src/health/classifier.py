"""Severity classifier: turns sustained check failures into incidents.

For a failing event the classifier:
  1. resolves the site (NotFoundError if unknown),
  2. skips everything inside the deploy suppression window,
  3. counts the leading run of ``fail`` results in recent history,
  4. stops below the failure threshold,
  5. maps the check type to a severity,
  6. appends to the open incident for (site, check type) or opens a new one
     and notifies once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from .errors import IncidentConflictError, NotFoundError
from .models import CheckType, Incident, MonitoredSite, Result, Severity, utcnow
from .store import MonitorStore

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 2
HISTORY_WINDOW = 5

SEVERITY_BY_CHECK_TYPE: dict[CheckType, Severity] = {
    CheckType.UPTIME: Severity.SEV1,
    CheckType.HEALTH_API: Severity.SEV1,
    CheckType.SSL: Severity.SEV1,
    CheckType.CMS: Severity.SEV2,
    CheckType.FORM: Severity.SEV2,
    CheckType.SEO: Severity.SEV3,
}

INCIDENT_TITLES: dict[CheckType, str] = {
    CheckType.UPTIME: "Site Unreachable",
    CheckType.HEALTH_API: "Health API Failing",
    CheckType.SSL: "SSL Certificate Issue",
    CheckType.CMS: "CMS Health Degraded",
    CheckType.FORM: "Form Submission Failing",
    CheckType.SEO: "SEO Issue Detected",
}

INCIDENT_DESCRIPTIONS: dict[CheckType, str] = {
    CheckType.UPTIME: "{site_name} is not responding to requests.",
    CheckType.HEALTH_API: "The /api/health endpoint is returning errors.",
    CheckType.SSL: "SSL certificate validation failed.",
    CheckType.CMS: "The CMS health check is failing. Content may not be loading.",
    CheckType.FORM: "Form submission test is failing. Lead capture may be broken.",
    CheckType.SEO: "SEO-related issues detected (robots.txt, sitemap, etc).",
}

DEFAULT_TITLE = "Health Check Failing"
DEFAULT_DESCRIPTION = "A health check is failing."


class Notifier(Protocol):
    def notify_incident(
        self, incident_id: str, site_id: str, severity: Severity, is_new: bool = True,
    ) -> Any: ...


@dataclass
class Classification:
    """Outcome of classifying one failing event."""

    suppressed: bool = False
    incident_created: bool = False
    incident_id: str | None = None
    severity: Severity | None = None
    consecutive_failures: int = 0
    reason: str | None = None

    def to_response(self) -> dict[str, Any]:
        if self.suppressed:
            return {"success": True, "suppressed": True, "reason": self.reason}
        if self.incident_id is None:
            return {"success": True, "incident_created": False, "reason": self.reason}
        return {
            "success": True,
            "incident_created": self.incident_created,
            "incident_id": self.incident_id,
            "severity": self.severity.value,
            "consecutive_failures": self.consecutive_failures,
        }


# ── Pure helpers ─────────────────────────────────────────────────────────────


def count_consecutive_failures(results: Iterable[Result | str]) -> int:
    """Length of the leading run of failures in newest-first history."""
    count = 0
    for r in results:
        if Result(r) != Result.FAIL:
            break
        count += 1
    return count


def severity_for(check_type: str) -> Severity:
    ct = CheckType.parse(check_type)
    return SEVERITY_BY_CHECK_TYPE.get(ct, Severity.SEV3)


def incident_title(check_type: str, severity: Severity) -> str:
    title = INCIDENT_TITLES.get(CheckType.parse(check_type), DEFAULT_TITLE)
    return f"{severity.label}: {title}"


def incident_description(check_type: str, site_name: str, failures: int) -> str:
    template = INCIDENT_DESCRIPTIONS.get(CheckType.parse(check_type), DEFAULT_DESCRIPTION)
    return f"{template.format(site_name=site_name)} ({failures} consecutive failures)"


def in_suppression_window(site: MonitoredSite, now: datetime) -> bool:
    if site.last_deploy_at is None:
        return False
    window_end = site.last_deploy_at + timedelta(minutes=site.deploy_suppression_minutes)
    return now < window_end


# ── Classifier ───────────────────────────────────────────────────────────────


class SeverityClassifier:
    """Decides whether a failing event opens, extends, or leaves incidents alone."""

    def __init__(
        self,
        store: MonitorStore,
        notifier: Notifier | None = None,
        failure_threshold: int = FAILURE_THRESHOLD,
        history_window: int = HISTORY_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.failure_threshold = failure_threshold
        self.history_window = history_window
        self.clock = clock

    def classify(self, site_id: str, check_type: str, event_id: str) -> Classification:
        site = self.store.get_site(site_id)
        if site is None:
            raise NotFoundError("Site not found", site_id)

        now = self.clock()
        if in_suppression_window(site, now):
            logger.info("%s: in deploy suppression window, skipping incident creation", site.name)
            return Classification(suppressed=True, reason="Deploy suppression window active")

        history = self.store.recent_results(site.id, check_type, self.history_window)
        failures = count_consecutive_failures(history)
        logger.info("%s [%s]: %d consecutive failures", site.name, check_type, failures)

        if failures < self.failure_threshold:
            return Classification(
                consecutive_failures=failures,
                reason=(
                    f"Only {failures} consecutive failures "
                    f"(threshold: {self.failure_threshold})"
                ),
            )

        severity = severity_for(check_type)
        existing = self.store.get_open_incident(site.id, check_type)
        if existing is None:
            try:
                incident = self._open_incident(site, check_type, event_id, severity, failures, now)
            except IncidentConflictError:
                existing = self.store.get_open_incident(site.id, check_type)
                if existing is None:
                    raise
                logger.info("Lost incident race for %s [%s], appending instead", site.name, check_type)
            else:
                return Classification(
                    incident_created=True,
                    incident_id=incident.id,
                    severity=severity,
                    consecutive_failures=failures,
                )

        self.store.append_incident_event(existing.id, event_id, now)
        logger.info("Added event %s to existing incident %s", event_id, existing.id)
        return Classification(
            incident_created=False,
            incident_id=existing.id,
            severity=severity,
            consecutive_failures=failures,
        )

    def _open_incident(
        self,
        site: MonitoredSite,
        check_type: str,
        event_id: str,
        severity: Severity,
        failures: int,
        now: datetime,
    ) -> Incident:
        incident = self.store.create_incident(Incident(
            site_id=site.id,
            severity=severity,
            title=incident_title(check_type, severity),
            description=incident_description(check_type, site.name, failures),
            trigger_check_type=check_type,
            trigger_event_ids=[event_id],
            opened_at=now,
            updated_at=now,
        ))
        logger.warning("Created %s incident for %s: %s", severity.value, site.name, incident.id)
        self._notify(incident)
        return incident

    def _notify(self, incident: Incident) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify_incident(
                incident.id, incident.site_id, incident.severity, is_new=True,
            )
        except Exception:
            logger.exception("Failed to notify for incident %s", incident.id)
