"""SQLite-backed storage for sites, checks, events, incidents and error logs.

Events are append-only. The open-incident invariant is enforced by a partial
unique index on (site_id, trigger_check_type) WHERE status = 'open'; a
conflicting insert raises IncidentConflictError.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import IncidentConflictError, PersistenceError
from .models import (
    CheckType,
    DeployEvent,
    ErrorLogEntry,
    HealthCheck,
    HealthEvent,
    Incident,
    IncidentStatus,
    MonitoredSite,
    Result,
    Severity,
    SiteStatus,
)

logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).parent.parent.parent / "data" / "monitor.db"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS monitored_sites (
        id TEXT PRIMARY KEY,
        site_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        primary_domain TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        last_deploy_at TEXT,
        deploy_suppression_minutes INTEGER NOT NULL DEFAULT 30,
        secret TEXT
    );

    CREATE TABLE IF NOT EXISTS health_checks (
        id TEXT PRIMARY KEY,
        site_id TEXT NOT NULL REFERENCES monitored_sites (id),
        check_type TEXT NOT NULL,
        target TEXT NOT NULL,
        timeout_ms INTEGER NOT NULL DEFAULT 10000,
        expected_status INTEGER NOT NULL DEFAULT 200,
        enabled INTEGER NOT NULL DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS health_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        site_id TEXT NOT NULL,
        check_id TEXT NOT NULL,
        check_type TEXT NOT NULL,
        result TEXT NOT NULL,
        latency_ms REAL,
        http_status INTEGER,
        error_message TEXT,
        raw_payload TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_events_site_type
        ON health_events (site_id, check_type, created_at DESC);

    CREATE TABLE IF NOT EXISTS incidents (
        id TEXT PRIMARY KEY,
        site_id TEXT NOT NULL,
        severity TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open',
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        trigger_check_type TEXT NOT NULL,
        trigger_event_ids TEXT NOT NULL DEFAULT '[]',
        opened_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS uq_incidents_open
        ON incidents (site_id, trigger_check_type) WHERE status = 'open';

    CREATE TABLE IF NOT EXISTS error_logs (
        id TEXT PRIMARY KEY,
        site_id TEXT NOT NULL,
        severity TEXT NOT NULL,
        error_type TEXT NOT NULL,
        message TEXT NOT NULL,
        path TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        processed INTEGER NOT NULL DEFAULT 0,
        incident_id TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS deploy_events (
        id TEXT PRIMARY KEY,
        site_id TEXT NOT NULL,
        deploy_id TEXT NOT NULL,
        environment TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    );
"""


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _site_from_row(row: sqlite3.Row) -> MonitoredSite:
    return MonitoredSite(
        id=row["id"],
        site_id=row["site_id"],
        name=row["name"],
        primary_domain=row["primary_domain"],
        status=SiteStatus(row["status"]),
        last_deploy_at=_ts(row["last_deploy_at"]),
        deploy_suppression_minutes=row["deploy_suppression_minutes"],
        secret=row["secret"],
    )


def _check_from_row(row: sqlite3.Row) -> HealthCheck:
    return HealthCheck(
        id=row["id"],
        site_id=row["site_id"],
        check_type=CheckType(row["check_type"]),
        target=row["target"],
        timeout_ms=row["timeout_ms"],
        expected_status=row["expected_status"],
        enabled=bool(row["enabled"]),
    )


def _event_from_row(row: sqlite3.Row) -> HealthEvent:
    return HealthEvent(
        id=row["id"],
        site_id=row["site_id"],
        check_id=row["check_id"],
        check_type=row["check_type"],
        result=Result(row["result"]),
        latency_ms=row["latency_ms"],
        http_status=row["http_status"],
        error_message=row["error_message"],
        raw_payload=json.loads(row["raw_payload"]) if row["raw_payload"] else None,
        created_at=_ts(row["created_at"]),
    )


def _incident_from_row(row: sqlite3.Row) -> Incident:
    return Incident(
        id=row["id"],
        site_id=row["site_id"],
        severity=Severity(row["severity"]),
        status=IncidentStatus(row["status"]),
        title=row["title"],
        description=row["description"],
        trigger_check_type=row["trigger_check_type"],
        trigger_event_ids=json.loads(row["trigger_event_ids"] or "[]"),
        opened_at=_ts(row["opened_at"]),
        updated_at=_ts(row["updated_at"]),
    )


def _error_log_from_row(row: sqlite3.Row) -> ErrorLogEntry:
    return ErrorLogEntry(
        id=row["id"],
        site_id=row["site_id"],
        severity=Severity(row["severity"]),
        error_type=row["error_type"],
        message=row["message"],
        path=row["path"],
        metadata=json.loads(row["metadata"] or "{}"),
        processed=bool(row["processed"]),
        incident_id=row["incident_id"],
        created_at=_ts(row["created_at"]),
    )


class MonitorStore:
    """Persistence for the monitoring core.

    A single connection is shared between the event loop and the API thread
    pool; every statement runs under ``_lock``.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(_SCHEMA)
            conn.commit()

    @contextmanager
    def _write(self, what: str) -> Iterator[sqlite3.Connection]:
        """Run a write under the lock; commit on success, wrap sqlite errors."""
        with self._lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"Failed to {what}", str(e)) from e

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._get_conn().execute(sql, params).fetchall()

    # ── Sites ─────────────────────────────────────────────────────────────

    def upsert_site(self, site: MonitoredSite) -> MonitoredSite:
        """Insert or update a site, keyed by its internal id."""
        with self._write("save site") as conn:
            conn.execute(
                "INSERT INTO monitored_sites "
                "(id, site_id, name, primary_domain, status, last_deploy_at, "
                "deploy_suppression_minutes, secret) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET site_id = excluded.site_id, "
                "name = excluded.name, primary_domain = excluded.primary_domain, "
                "status = excluded.status, "
                "deploy_suppression_minutes = excluded.deploy_suppression_minutes, "
                "secret = excluded.secret",
                (
                    site.id, site.site_id, site.name, site.primary_domain,
                    site.status.value,
                    site.last_deploy_at.isoformat() if site.last_deploy_at else None,
                    site.deploy_suppression_minutes, site.secret,
                ),
            )
        return site

    def get_site(self, site_id: str) -> MonitoredSite | None:
        """Look up a site by internal id."""
        rows = self._query("SELECT * FROM monitored_sites WHERE id = ?", (site_id,))
        return _site_from_row(rows[0]) if rows else None

    def get_site_by_external_id(self, external_id: str) -> MonitoredSite | None:
        rows = self._query("SELECT * FROM monitored_sites WHERE site_id = ?", (external_id,))
        return _site_from_row(rows[0]) if rows else None

    def list_sites(self) -> list[MonitoredSite]:
        rows = self._query("SELECT * FROM monitored_sites ORDER BY name")
        return [_site_from_row(r) for r in rows]

    def set_last_deploy(self, site_id: str, deployed_at: datetime) -> None:
        with self._write("update last_deploy_at") as conn:
            conn.execute(
                "UPDATE monitored_sites SET last_deploy_at = ? WHERE id = ?",
                (deployed_at.isoformat(), site_id),
            )

    def set_site_status(self, site_id: str, status: SiteStatus) -> None:
        with self._write("update site status") as conn:
            conn.execute(
                "UPDATE monitored_sites SET status = ? WHERE id = ?",
                (status.value, site_id),
            )

    # ── Checks ────────────────────────────────────────────────────────────

    def upsert_check(self, check: HealthCheck) -> HealthCheck:
        with self._write("save health check") as conn:
            conn.execute(
                "INSERT INTO health_checks "
                "(id, site_id, check_type, target, timeout_ms, expected_status, enabled) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET check_type = excluded.check_type, "
                "target = excluded.target, timeout_ms = excluded.timeout_ms, "
                "expected_status = excluded.expected_status, enabled = excluded.enabled",
                (
                    check.id, check.site_id, check.check_type.value, check.target,
                    check.timeout_ms, check.expected_status, int(check.enabled),
                ),
            )
        return check

    def list_active_checks(self) -> list[tuple[MonitoredSite, HealthCheck]]:
        """Return (site, check) pairs for enabled checks of active sites."""
        rows = self._query(
            "SELECT c.id AS c_id, c.check_type, c.target, c.timeout_ms, "
            "c.expected_status, c.enabled, s.* "
            "FROM health_checks c JOIN monitored_sites s ON s.id = c.site_id "
            "WHERE c.enabled = 1 AND s.status = ?",
            (SiteStatus.ACTIVE.value,),
        )
        pairs = []
        for r in rows:
            site = _site_from_row(r)
            check = HealthCheck(
                id=r["c_id"],
                site_id=site.id,
                check_type=CheckType(r["check_type"]),
                target=r["target"],
                timeout_ms=r["timeout_ms"],
                expected_status=r["expected_status"],
                enabled=bool(r["enabled"]),
            )
            pairs.append((site, check))
        return pairs

    def get_checks(self, site_id: str) -> list[HealthCheck]:
        rows = self._query("SELECT * FROM health_checks WHERE site_id = ?", (site_id,))
        return [_check_from_row(r) for r in rows]

    def disable_checks_except(self, site_id: str, keep_ids: list[str]) -> int:
        """Disable every enabled check of a site not listed in ``keep_ids``."""
        sql = "UPDATE health_checks SET enabled = 0 WHERE site_id = ? AND enabled = 1"
        if keep_ids:
            sql += f" AND id NOT IN ({', '.join('?' * len(keep_ids))})"
        with self._write("disable removed checks") as conn:
            cur = conn.execute(sql, (site_id, *keep_ids))
        return cur.rowcount

    # ── Events ────────────────────────────────────────────────────────────

    def append_event(self, event: HealthEvent) -> HealthEvent:
        with self._write("record health event") as conn:
            conn.execute(
                "INSERT INTO health_events "
                "(id, site_id, check_id, check_type, result, latency_ms, http_status, "
                "error_message, raw_payload, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id, event.site_id, event.check_id, event.check_type,
                    event.result.value, event.latency_ms, event.http_status,
                    event.error_message,
                    json.dumps(event.raw_payload) if event.raw_payload is not None else None,
                    event.created_at.isoformat(),
                ),
            )
        return event

    def recent_events(
        self, site_id: str, check_type: str | None = None, limit: int = 100,
    ) -> list[HealthEvent]:
        """Events for a site (optionally one check type), newest first."""
        if check_type:
            rows = self._query(
                "SELECT * FROM health_events WHERE site_id = ? AND check_type = ? "
                "ORDER BY created_at DESC, seq DESC LIMIT ?",
                (site_id, check_type, limit),
            )
        else:
            rows = self._query(
                "SELECT * FROM health_events WHERE site_id = ? "
                "ORDER BY created_at DESC, seq DESC LIMIT ?",
                (site_id, limit),
            )
        return [_event_from_row(r) for r in rows]

    def recent_results(self, site_id: str, check_type: str, limit: int) -> list[Result]:
        rows = self._query(
            "SELECT result FROM health_events WHERE site_id = ? AND check_type = ? "
            "ORDER BY created_at DESC, seq DESC LIMIT ?",
            (site_id, check_type, limit),
        )
        return [Result(r["result"]) for r in rows]

    # ── Incidents ─────────────────────────────────────────────────────────

    def get_open_incident(self, site_id: str, trigger_check_type: str) -> Incident | None:
        rows = self._query(
            "SELECT * FROM incidents WHERE site_id = ? AND status = ? "
            "AND trigger_check_type = ?",
            (site_id, IncidentStatus.OPEN.value, trigger_check_type),
        )
        return _incident_from_row(rows[0]) if rows else None

    def get_incident(self, incident_id: str) -> Incident | None:
        rows = self._query("SELECT * FROM incidents WHERE id = ?", (incident_id,))
        return _incident_from_row(rows[0]) if rows else None

    def create_incident(self, incident: Incident) -> Incident:
        """Insert an incident; raises IncidentConflictError if one is already open."""
        try:
            with self._write("create incident") as conn:
                conn.execute(
                    "INSERT INTO incidents "
                    "(id, site_id, severity, status, title, description, "
                    "trigger_check_type, trigger_event_ids, opened_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        incident.id, incident.site_id, incident.severity.value,
                        incident.status.value, incident.title, incident.description,
                        incident.trigger_check_type, json.dumps(incident.trigger_event_ids),
                        incident.opened_at.isoformat(), incident.updated_at.isoformat(),
                    ),
                )
        except PersistenceError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise IncidentConflictError(incident.site_id, incident.trigger_check_type) from e
            raise
        return incident

    def append_incident_event(
        self, incident_id: str, event_id: str, updated_at: datetime,
    ) -> Incident:
        """Append an event id to an incident's trigger list and bump updated_at."""
        with self._write("update incident") as conn:
            row = conn.execute(
                "SELECT trigger_event_ids FROM incidents WHERE id = ?", (incident_id,),
            ).fetchone()
            if row is None:
                raise sqlite3.IntegrityError(f"incident {incident_id} does not exist")
            event_ids = json.loads(row["trigger_event_ids"] or "[]")
            event_ids.append(event_id)
            conn.execute(
                "UPDATE incidents SET trigger_event_ids = ?, updated_at = ? WHERE id = ?",
                (json.dumps(event_ids), updated_at.isoformat(), incident_id),
            )
        return self.get_incident(incident_id)

    def list_incidents(
        self,
        site_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[Incident]:
        clauses, params = [], []
        if site_id:
            clauses.append("site_id = ?")
            params.append(site_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = self._query(
            f"SELECT * FROM incidents {where}ORDER BY opened_at DESC LIMIT ?",
            (*params, limit),
        )
        return [_incident_from_row(r) for r in rows]

    # ── Error logs ────────────────────────────────────────────────────────

    def insert_error_log(self, entry: ErrorLogEntry) -> ErrorLogEntry:
        with self._write("record error") as conn:
            conn.execute(
                "INSERT INTO error_logs "
                "(id, site_id, severity, error_type, message, path, metadata, "
                "processed, incident_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id, entry.site_id, entry.severity.value, entry.error_type,
                    entry.message, entry.path, json.dumps(entry.metadata or {}),
                    int(entry.processed), entry.incident_id, entry.created_at.isoformat(),
                ),
            )
        return entry

    def link_error_log(self, error_log_id: str, incident_id: str) -> None:
        """Mark an error log as processed and attach it to an incident."""
        with self._write("link error log") as conn:
            conn.execute(
                "UPDATE error_logs SET processed = 1, incident_id = ? WHERE id = ?",
                (incident_id, error_log_id),
            )

    def get_error_log(self, error_log_id: str) -> ErrorLogEntry | None:
        rows = self._query("SELECT * FROM error_logs WHERE id = ?", (error_log_id,))
        return _error_log_from_row(rows[0]) if rows else None

    # ── Deploys ───────────────────────────────────────────────────────────

    def insert_deploy_event(self, deploy: DeployEvent) -> DeployEvent:
        with self._write("record deploy event") as conn:
            conn.execute(
                "INSERT INTO deploy_events "
                "(id, site_id, deploy_id, environment, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    deploy.id, deploy.site_id, deploy.deploy_id, deploy.environment,
                    json.dumps(deploy.metadata or {}), deploy.created_at.isoformat(),
                ),
            )
        return deploy

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
