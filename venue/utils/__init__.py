from .helpers import (
    serialize_mongo_doc,
    success_response,
    error_response,
    parse_object_id,
    utc_now,
)
from .logger import Logger
from .exceptions import (
    NotAuthenticatedError,
    PermissionDeniedError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "serialize_mongo_doc",
    "success_response",
    "error_response",
    "parse_object_id",
    "utc_now",
    "Logger",
    "NotAuthenticatedError",
    "PermissionDeniedError",
    "NotFoundError",
    "ValidationError",
]
