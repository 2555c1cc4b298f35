"""Site registry: loads sites.yaml and syncs it into the monitor store.

Sites and their checks are configuration: the YAML file is the source of
truth and ``sync`` upserts it. Internal ids are derived with uuid5 so that
repeated syncs update rows in place.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any

import yaml

from src.health.models import CheckType, HealthCheck, MonitoredSite, SiteStatus
from src.health.store import MonitorStore

logger = logging.getLogger(__name__)

REGISTRY_PATH = Path(__file__).parent.parent.parent / "sites.yaml"

_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "site-monitor")


def site_uuid(external_id: str) -> str:
    return uuid.uuid5(_NAMESPACE, f"site:{external_id}").hex


def check_uuid(external_id: str, check_key: str) -> str:
    return uuid.uuid5(_NAMESPACE, f"check:{external_id}:{check_key}").hex


class SiteRegistry:
    """Loads and caches site definitions from sites.yaml."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path or REGISTRY_PATH)
        self._sites: list[tuple[MonitoredSite, list[HealthCheck]]] = []
        self._loaded = False
        self._readable = False

    def load(self, force: bool = False) -> list[tuple[MonitoredSite, list[HealthCheck]]]:
        """Parse sites.yaml and return (site, checks) pairs."""
        if self._loaded and not force:
            return self._sites

        self._sites = []
        self._readable = False
        if not self._path.exists():
            logger.warning("Site registry file not found: %s", self._path)
            self._loaded = True
            return self._sites

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except Exception as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._sites

        for entry in raw.get("sites", []) or []:
            try:
                self._sites.append(_parse_site(entry))
            except Exception as e:
                logger.warning("Skipping malformed site entry: %s", e)

        self._readable = True
        self._loaded = True
        logger.info("Loaded %d sites from registry", len(self._sites))
        return self._sites

    @property
    def sites(self) -> list[MonitoredSite]:
        return [site for site, _ in self.load()]

    def get(self, external_id: str) -> MonitoredSite | None:
        return next((s for s in self.sites if s.site_id == external_id), None)

    def sync(self, store: MonitorStore) -> int:
        """Make the store match the file; return the number of checks synced.

        Checks dropped from a site are disabled and sites dropped from the file
        are suspended. Nothing is retired when the file is missing or unreadable.
        """
        synced = 0
        sites = self.load(force=True)
        for site, checks in sites:
            existing = store.get_site(site.id)
            if existing is not None:
                # deploy ingestion owns this field
                site.last_deploy_at = existing.last_deploy_at
            store.upsert_site(site)
            for check in checks:
                store.upsert_check(check)
                synced += 1
            disabled = store.disable_checks_except(site.id, [c.id for c in checks])
            if disabled:
                logger.info("Disabled %d removed checks for %s", disabled, site.site_id)

        if self._readable:
            listed = {site.id for site, _ in sites}
            for stored in store.list_sites():
                if stored.id not in listed and stored.is_active:
                    store.set_site_status(stored.id, SiteStatus.SUSPENDED)
                    logger.info("Suspended %s: no longer in %s", stored.site_id, self._path.name)

        logger.info("Synced %d sites / %d checks into the store", len(sites), synced)
        return synced


# ── Parsers ──────────────────────────────────────────────────────────────────


def _parse_site(raw: dict[str, Any]) -> tuple[MonitoredSite, list[HealthCheck]]:
    external_id = str(raw.get("site_id") or "").strip()
    if not external_id:
        raise ValueError("Site 'site_id' is required")
    domain = str(raw.get("primary_domain") or "").strip()
    if not domain:
        raise ValueError(f"Site '{external_id}' has no primary_domain")

    site = MonitoredSite(
        id=site_uuid(external_id),
        site_id=external_id,
        name=raw.get("name") or external_id,
        primary_domain=domain,
        status=SiteStatus(raw.get("status", "active")),
        deploy_suppression_minutes=int(raw.get("deploy_suppression_minutes", 30)),
        secret=raw.get("secret") or None,
    )

    checks = []
    for c in raw.get("checks") or []:
        check_type = CheckType.parse(str(c.get("type", "")))
        if check_type is None:
            logger.warning("Site '%s': unknown check type %r, skipping", external_id, c.get("type"))
            continue
        target = c.get("target", "/")
        key = c.get("id") or f"{check_type.value}:{target}"
        checks.append(
            HealthCheck(
                id=check_uuid(external_id, key),
                site_id=site.id,
                check_type=check_type,
                target=target,
                timeout_ms=int(c.get("timeout_ms", 10_000)),
                expected_status=int(c.get("expected_status", 200)),
                enabled=bool(c.get("enabled", True)),
            )
        )
    return site, checks
