from .service import AuditService

__all__ = ["AuditService"]
