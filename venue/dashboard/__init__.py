from .routes import dashboard_router
from .service import DashboardService, load_dashboard_snapshot

__all__ = ["dashboard_router", "DashboardService", "load_dashboard_snapshot"]
