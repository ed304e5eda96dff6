from .routes import receipts_router
from .service import ReceiptService

__all__ = ["receipts_router", "ReceiptService"]
