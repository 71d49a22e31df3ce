# atlas_board/remote_api/__init__.py
from .client import CouchDBClient, redact_url
from .exceptions import (
    RemoteAPIError, APIConnectionError, APIResponseError,
    AuthenticationError, PermissionDeniedError, RemoteConflictError
)

__all__ = [
    "CouchDBClient", "redact_url",
    "RemoteAPIError", "APIConnectionError", "APIResponseError",
    "AuthenticationError", "PermissionDeniedError", "RemoteConflictError",
]
