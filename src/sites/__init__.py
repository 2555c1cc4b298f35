from src.sites.registry import SiteRegistry, check_uuid, site_uuid

__all__ = [
    "SiteRegistry",
    "check_uuid",
    "site_uuid",
]
