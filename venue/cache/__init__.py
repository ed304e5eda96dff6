from .tagged_cache import TaggedTTLCache, snapshot_cache, revalidate_tag

DASHBOARD_TAG = "dashboard"

__all__ = ["TaggedTTLCache", "snapshot_cache", "revalidate_tag", "DASHBOARD_TAG"]
