"""API routes for the monitoring core.

Endpoints:
  POST /api/poll                   run one poll cycle over all checks
  POST /api/classify               classify a failing health event
  POST /api/ingest/error           record an error reported by a site
  POST /api/ingest/deploy          record a deploy (starts suppression)
  GET  /api/sites                  monitored sites
  GET  /api/sites/{id}/events      recent health events for a site
  GET  /api/incidents              incidents, newest first
  GET  /api/notifications/status   outbox and dispatcher status
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel

from src.health.errors import NotFoundError, ValidationError
from src.health.ingestion import DeployReport, ErrorReport

logger = logging.getLogger(__name__)

monitor_router = APIRouter()


# -- Request models ------------------------------------------------------------
# Fields are optional so that missing values produce our own 400 body.


class ClassifyRequest(BaseModel):
    site_id: str | None = None
    check_type: str | None = None
    event_id: str | None = None


class ErrorIngestRequest(BaseModel):
    site_id: str | None = None
    severity: str | None = None
    type: str | None = None
    message: str | None = None
    path: str | None = None
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None


class DeployIngestRequest(BaseModel):
    site_id: str | None = None
    deploy_id: str | None = None
    environment: str | None = None
    timestamp: datetime | None = None
    metadata: dict[str, Any] | None = None


# -- Core endpoints ------------------------------------------------------------


@monitor_router.post("/poll")
async def poll_health_checks(request: Request) -> dict[str, Any]:
    """Probe every enabled check of every active site."""
    poller = request.app.state.poller
    summary = await poller.run_cycle()
    return summary.to_response()


@monitor_router.post("/classify")
def classify_severity(body: ClassifyRequest, request: Request) -> dict[str, Any]:
    """Decide whether a failing event opens or extends an incident."""
    if not (body.site_id and body.check_type and body.event_id):
        raise ValidationError("Missing required fields: site_id, check_type, event_id")

    classifier = request.app.state.classifier
    result = classifier.classify(body.site_id, body.check_type, body.event_id)
    return result.to_response()


@monitor_router.post("/ingest/error")
def ingest_error(
    body: ErrorIngestRequest,
    request: Request,
    x_site_secret: str | None = Header(default=None),
) -> dict[str, Any]:
    """Record an error pushed by a monitored site."""
    ingestor = request.app.state.error_ingestor
    result = ingestor.ingest(
        ErrorReport(
            site_id=body.site_id or "",
            severity=body.severity or "",
            type=body.type or "",
            message=body.message or "",
            path=body.path,
            timestamp=body.timestamp,
            metadata=body.metadata,
        ),
        provided_secret=x_site_secret,
    )
    return result.to_response()


@monitor_router.post("/ingest/deploy")
def ingest_deploy(
    body: DeployIngestRequest,
    request: Request,
    x_site_secret: str | None = Header(default=None),
) -> dict[str, Any]:
    """Record a deploy and open the site's alert suppression window."""
    ingestor = request.app.state.deploy_ingestor
    deploy = ingestor.ingest(
        DeployReport(
            site_id=body.site_id or "",
            deploy_id=body.deploy_id or "",
            environment=body.environment or "",
            timestamp=body.timestamp,
            metadata=body.metadata,
        ),
        provided_secret=x_site_secret,
    )
    return {
        "success": True,
        "message": "Deploy event recorded",
        "deploy_event_id": deploy.id,
        "suppression_active": True,
    }


# -- Read endpoints ------------------------------------------------------------


@monitor_router.get("/sites")
def list_sites(request: Request) -> dict[str, Any]:
    store = request.app.state.store
    return {"sites": [s.to_dict() for s in store.list_sites()]}


@monitor_router.get("/sites/{site_id}/events")
def site_events(
    site_id: str,
    request: Request,
    check_type: str | None = None,
    limit: int = 100,
) -> dict[str, Any]:
    """Recent health events for a site, newest first."""
    store = request.app.state.store
    if store.get_site(site_id) is None:
        raise NotFoundError("Site not found", site_id)
    events = store.recent_events(site_id, check_type, limit)
    return {"site_id": site_id, "events": [e.to_dict() for e in events]}


@monitor_router.get("/incidents")
def list_incidents(
    request: Request,
    site_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> dict[str, Any]:
    store = request.app.state.store
    incidents = store.list_incidents(site_id, status, limit)
    return {"incidents": [i.to_dict() for i in incidents]}


@monitor_router.get("/notifications/status")
def notification_status(request: Request) -> dict[str, Any]:
    dispatcher = request.app.state.dispatcher
    return dispatcher.status()
