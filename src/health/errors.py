"""Exceptions raised by the monitoring core.

The API layer maps each ``MonitorError`` to its ``status_code`` and renders
``{"error": ..., "details": ...}``.
"""

from __future__ import annotations

from typing import Any


class MonitorError(Exception):
    """Base class for errors that surface to API callers."""

    status_code = 500

    def __init__(self, error: str, details: Any = None) -> None:
        self.error = error
        self.details = details
        super().__init__(error if details is None else f"{error}: {details}")

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(MonitorError):
    """Missing or malformed request fields."""

    status_code = 400


class UnauthorizedError(MonitorError):
    """Shared secret mismatch."""

    status_code = 401

    def __init__(self, error: str = "Unauthorized", details: Any = None) -> None:
        super().__init__(error, details)


class NotFoundError(MonitorError):
    """Unknown site, check or incident."""

    status_code = 404


class PersistenceError(MonitorError):
    """A store write failed."""

    status_code = 500


class IncidentConflictError(Exception):
    """An open incident already exists for (site, trigger_check_type)."""

    def __init__(self, site_id: str, trigger_check_type: str) -> None:
        self.site_id = site_id
        self.trigger_check_type = trigger_check_type
        super().__init__(f"Open incident already exists for {site_id}/{trigger_check_type}")
