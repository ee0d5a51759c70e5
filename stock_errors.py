"""Error taxonomy shared by the store, the pipelines and the local API."""
from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base class for every error raised across a component boundary."""


class AuthError(SyncError):
    """Missing or rejected credential. Fatal for the workflow, never retried."""


class NetworkError(SyncError):
    """Connectivity failure or timeout talking to the paired server."""


class RemoteError(NetworkError):
    """The server answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PayloadError(SyncError):
    """The server answered with something that cannot be interpreted."""


class NotFoundError(SyncError):
    """No barcode match / no such staged row."""


class DuplicateError(SyncError):
    """Barcode is already staged in the current session."""

    def __init__(self, message: str, existing: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.existing = existing


class ValidationError(SyncError):
    def __init__(self, message: str, items: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.items = items or []


class SchemaError(SyncError):
    """Schema creation or migration failed; the store must not be used."""


class StoreError(SyncError):
    """A local read/write failed."""


class DownloadInProgressError(SyncError):
    pass


class PartialCommitError(SyncError):
    """Some staged items could not be committed; they remain pending."""

    def __init__(self, result: Any):
        super().__init__(
            f"{result.success_count} item(s) committed, {result.error_count} failed"
        )
        self.result = result
