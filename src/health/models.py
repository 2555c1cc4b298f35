"""Domain models for sites, checks, events, incidents and error logs."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ── Enumerations ─────────────────────────────────────────────────────────────


class CheckType(str, Enum):
    UPTIME = "uptime"
    HEALTH_API = "health_api"
    SSL = "ssl"
    CMS = "cms"
    FORM = "form"
    SEO = "seo"

    @classmethod
    def parse(cls, value: str) -> CheckType | None:
        """Return the matching member, or None for an unknown check type."""
        try:
            return cls(value)
        except ValueError:
            return None


class Result(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


class Severity(str, Enum):
    SEV1 = "sev-1"
    SEV2 = "sev-2"
    SEV3 = "sev-3"

    @property
    def label(self) -> str:
        return self.value.upper()


class SiteStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class IncidentStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


# ── Records ──────────────────────────────────────────────────────────────────


@dataclass
class MonitoredSite:
    """A site under monitoring. ``site_id`` is the external identifier."""

    site_id: str
    name: str
    primary_domain: str
    id: str = field(default_factory=new_id)
    status: SiteStatus = SiteStatus.ACTIVE
    last_deploy_at: datetime | None = None
    deploy_suppression_minutes: int = 30
    secret: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SiteStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "name": self.name,
            "primary_domain": self.primary_domain,
            "status": self.status.value,
            "last_deploy_at": _iso(self.last_deploy_at),
            "deploy_suppression_minutes": self.deploy_suppression_minutes,
            "has_secret": bool(self.secret),
        }


@dataclass
class HealthCheck:
    """A configured probe against a monitored site."""

    site_id: str
    check_type: CheckType
    target: str
    id: str = field(default_factory=new_id)
    timeout_ms: int = 10_000
    expected_status: int = 200
    enabled: bool = True


@dataclass
class HealthEvent:
    """One immutable recorded outcome of executing a check."""

    site_id: str
    check_id: str
    check_type: str
    result: Result
    latency_ms: float
    id: str = field(default_factory=new_id)
    http_status: int | None = None
    error_message: str | None = None
    raw_payload: Any = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "check_id": self.check_id,
            "check_type": self.check_type,
            "result": self.result.value,
            "latency_ms": self.latency_ms,
            "http_status": self.http_status,
            "error_message": self.error_message,
            "raw_payload": self.raw_payload,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Incident:
    site_id: str
    severity: Severity
    title: str
    description: str
    trigger_check_type: str
    id: str = field(default_factory=new_id)
    status: IncidentStatus = IncidentStatus.OPEN
    trigger_event_ids: list[str] = field(default_factory=list)
    opened_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "severity": self.severity.value,
            "status": self.status.value,
            "title": self.title,
            "description": self.description,
            "trigger_check_type": self.trigger_check_type,
            "trigger_event_ids": list(self.trigger_event_ids),
            "opened_at": _iso(self.opened_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ErrorLogEntry:
    """An error reported directly by a monitored site."""

    site_id: str
    severity: Severity
    error_type: str
    message: str
    id: str = field(default_factory=new_id)
    path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    incident_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DeployEvent:
    site_id: str
    deploy_id: str
    environment: str
    id: str = field(default_factory=new_id)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
