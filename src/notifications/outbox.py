"""Notification outbox: durable SQLite queue of incident envelopes.

Rows move pending → delivered, or pending → dead once the attempt budget is
spent. Delivery is at-least-once: a row is only marked delivered after the
webhook accepted it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent.parent.parent / "data"
DB_PATH = DATA_DIR / "outbox.db"

STATUSES = ("pending", "delivered", "dead")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OutboundNotification:
    """A single queued webhook delivery."""

    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = "pending"
    attempts: int = 0
    next_attempt_at: datetime = field(default_factory=_now)
    last_error: str | None = None
    created_at: datetime = field(default_factory=_now)
    delivered_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> OutboundNotification:
        delivered = row["delivered_at"]
        return cls(
            id=row["id"],
            payload=json.loads(row["payload"]),
            status=row["status"],
            attempts=row["attempts"],
            next_attempt_at=datetime.fromisoformat(row["next_attempt_at"]),
            last_error=row["last_error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            delivered_at=datetime.fromisoformat(delivered) if delivered else None,
        )


class NotificationOutbox:
    """SQLite-backed outbox storage."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id              TEXT PRIMARY KEY,
                    payload         TEXT NOT NULL,
                    status          TEXT NOT NULL DEFAULT 'pending',
                    attempts        INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT NOT NULL,
                    last_error      TEXT,
                    created_at      TEXT NOT NULL,
                    delivered_at    TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_due
                ON notifications (status, next_attempt_at)
            """)

    def enqueue(self, payload: dict[str, Any]) -> OutboundNotification:
        item = OutboundNotification(payload=payload)
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO notifications "
                "(id, payload, status, attempts, next_attempt_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    item.id, json.dumps(payload), item.status, item.attempts,
                    item.next_attempt_at.isoformat(), item.created_at.isoformat(),
                ),
            )
        return item

    def due(self, now: datetime | None = None, limit: int = 50) -> list[OutboundNotification]:
        """Pending rows whose next attempt is due, oldest first."""
        now = now or _now()
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE status = 'pending' "
                "AND next_attempt_at <= ? ORDER BY created_at LIMIT ?",
                (now.isoformat(), limit),
            ).fetchall()
        return [OutboundNotification.from_row(r) for r in rows]

    def get(self, notification_id: str) -> OutboundNotification | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,),
            ).fetchone()
        return OutboundNotification.from_row(row) if row else None

    def mark_delivered(self, notification_id: str) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE notifications SET status = 'delivered', attempts = attempts + 1, "
                "delivered_at = ?, last_error = NULL WHERE id = ?",
                (_now().isoformat(), notification_id),
            )

    def mark_failed(
        self,
        notification_id: str,
        error: str,
        next_attempt_at: datetime | None,
    ) -> None:
        """Record a failed attempt; ``next_attempt_at=None`` gives up on the row."""
        with self._conn() as conn:
            if next_attempt_at is None:
                conn.execute(
                    "UPDATE notifications SET status = 'dead', attempts = attempts + 1, "
                    "last_error = ? WHERE id = ?",
                    (error[:500], notification_id),
                )
            else:
                conn.execute(
                    "UPDATE notifications SET attempts = attempts + 1, last_error = ?, "
                    "next_attempt_at = ? WHERE id = ?",
                    (error[:500], next_attempt_at.isoformat(), notification_id),
                )

    def counts(self) -> dict[str, int]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM notifications GROUP BY status",
            ).fetchall()
        counts = {s: 0 for s in STATUSES}
        counts.update({r["status"]: r["n"] for r in rows})
        return counts
