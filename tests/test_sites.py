"""Tests for the site registry."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from src.health.models import CheckType, SiteStatus
from src.sites.registry import SiteRegistry, check_uuid, site_uuid


@pytest.fixture
def sample_yaml(tmp_path: Path) -> Path:
    """Create a minimal sites.yaml for testing."""
    data = {
        "sites": [
            {
                "site_id": "acme",
                "name": "Acme Corp",
                "primary_domain": "https://acme.example",
                "deploy_suppression_minutes": 15,
                "secret": "s3cret",
                "checks": [
                    {"type": "uptime", "target": "/"},
                    {"id": "api", "type": "health_api", "target": "/api/health", "timeout_ms": 5000},
                    {"type": "form", "target": "/api/contact", "expected_status": 201},
                    {"type": "dns", "target": "acme.example"},
                    {"type": "seo", "target": "/robots.txt", "enabled": False},
                ],
            },
            {
                "site_id": "paused",
                "primary_domain": "paused.example",
                "status": "suspended",
            },
            {"name": "No id", "primary_domain": "https://noid.example"},
        ]
    }
    path = tmp_path / "sites.yaml"
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


class TestSiteRegistry:
    def test_loads_sites(self, sample_yaml: Path) -> None:
        registry = SiteRegistry(sample_yaml)
        sites = registry.sites

        assert [s.site_id for s in sites] == ["acme", "paused"]
        acme = registry.get("acme")
        assert acme.name == "Acme Corp"
        assert acme.id == site_uuid("acme")
        assert acme.deploy_suppression_minutes == 15
        assert acme.secret == "s3cret"

    def test_defaults(self, sample_yaml: Path) -> None:
        paused = SiteRegistry(sample_yaml).get("paused")
        assert paused.name == "paused"
        assert paused.status == SiteStatus.SUSPENDED
        assert paused.deploy_suppression_minutes == 30
        assert paused.secret is None

    def test_checks_parsed(self, sample_yaml: Path) -> None:
        [(acme, checks), _] = SiteRegistry(sample_yaml).load()

        assert [c.check_type for c in checks] == [
            CheckType.UPTIME, CheckType.HEALTH_API, CheckType.FORM, CheckType.SEO,
        ]
        api = checks[1]
        assert api.id == check_uuid("acme", "api")
        assert api.site_id == acme.id
        assert api.timeout_ms == 5000
        assert checks[2].expected_status == 201
        assert checks[3].enabled is False

    def test_unknown_site(self, sample_yaml: Path) -> None:
        assert SiteRegistry(sample_yaml).get("nope") is None

    def test_missing_file(self, tmp_path: Path) -> None:
        assert SiteRegistry(tmp_path / "missing.yaml").sites == []

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("sites: [\n  - {broken", encoding="utf-8")
        assert SiteRegistry(path).sites == []

    def test_cached_until_forced(self, sample_yaml: Path) -> None:
        registry = SiteRegistry(sample_yaml)
        assert len(registry.sites) == 2
        sample_yaml.write_text(yaml.dump({"sites": []}), encoding="utf-8")
        assert len(registry.sites) == 2
        assert registry.load(force=True) == []


class TestSync:
    def test_sync_populates_store(self, sample_yaml: Path, store) -> None:
        count = SiteRegistry(sample_yaml).sync(store)

        assert count == 4
        assert {s.site_id for s in store.list_sites()} == {"acme", "paused"}
        active = store.list_active_checks()
        assert len(active) == 3
        assert all(site.site_id == "acme" for site, _ in active)

    def test_sync_is_idempotent(self, sample_yaml: Path, store) -> None:
        registry = SiteRegistry(sample_yaml)
        registry.sync(store)
        registry.sync(store)

        assert len(store.list_sites()) == 2
        assert len(store.get_checks(site_uuid("acme"))) == 4

    def test_sync_keeps_last_deploy(self, sample_yaml: Path, store) -> None:
        registry = SiteRegistry(sample_yaml)
        registry.sync(store)
        deployed = datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)
        store.set_last_deploy(site_uuid("acme"), deployed)

        registry.sync(store)
        assert store.get_site_by_external_id("acme").last_deploy_at == deployed

    def test_sync_applies_edits(self, sample_yaml: Path, store) -> None:
        registry = SiteRegistry(sample_yaml)
        registry.sync(store)

        data = yaml.safe_load(sample_yaml.read_text(encoding="utf-8"))
        data["sites"][0]["name"] = "Acme Inc"
        sample_yaml.write_text(yaml.dump(data), encoding="utf-8")
        registry.sync(store)

        assert store.get_site(site_uuid("acme")).name == "Acme Inc"

    def test_sync_disables_removed_checks(self, sample_yaml: Path, store) -> None:
        registry = SiteRegistry(sample_yaml)
        registry.sync(store)
        api_id = check_uuid("acme", "api")

        data = yaml.safe_load(sample_yaml.read_text(encoding="utf-8"))
        data["sites"][0]["checks"] = [c for c in data["sites"][0]["checks"] if c.get("id") != "api"]
        sample_yaml.write_text(yaml.dump(data), encoding="utf-8")
        registry.sync(store)

        active_ids = {check.id for _, check in store.list_active_checks()}
        assert api_id not in active_ids
        assert len(active_ids) == 2
        [api] = [c for c in store.get_checks(site_uuid("acme")) if c.id == api_id]
        assert api.enabled is False

    def test_sync_reenables_restored_check(self, sample_yaml: Path, store) -> None:
        registry = SiteRegistry(sample_yaml)
        original = sample_yaml.read_text(encoding="utf-8")
        registry.sync(store)

        data = yaml.safe_load(original)
        data["sites"][0]["checks"] = []
        sample_yaml.write_text(yaml.dump(data), encoding="utf-8")
        registry.sync(store)
        assert store.list_active_checks() == []

        sample_yaml.write_text(original, encoding="utf-8")
        registry.sync(store)
        assert len(store.list_active_checks()) == 3

    def test_sync_suspends_removed_sites(self, sample_yaml: Path, store) -> None:
        registry = SiteRegistry(sample_yaml)
        registry.sync(store)

        data = yaml.safe_load(sample_yaml.read_text(encoding="utf-8"))
        data["sites"] = [s for s in data["sites"] if s.get("site_id") != "acme"]
        sample_yaml.write_text(yaml.dump(data), encoding="utf-8")
        registry.sync(store)

        assert store.get_site(site_uuid("acme")).status == SiteStatus.SUSPENDED
        assert store.list_active_checks() == []

    def test_unreadable_file_retires_nothing(self, sample_yaml: Path, store) -> None:
        registry = SiteRegistry(sample_yaml)
        registry.sync(store)

        sample_yaml.write_text("sites: [\n  - {broken", encoding="utf-8")
        registry.sync(store)
        assert store.get_site(site_uuid("acme")).status == SiteStatus.ACTIVE
        assert len(store.list_active_checks()) == 3

        sample_yaml.unlink()
        registry.sync(store)
        assert len(store.list_active_checks()) == 3
