from .resolver import get_tenant_collection, get_global_collection

__all__ = ["get_tenant_collection", "get_global_collection"]
