"""Custom exceptions for the AEM Graph API layer."""
from typing import Optional


class AEMError(Exception):
    """Base exception for all AEM errors."""


class GraphApiError(AEMError):
    """Raised for Graph API transport failures (HTTP 4xx/5xx, network)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class GraphResponseError(AEMError):
    """Raised when a 200 response carries a root-level Graph error object."""

    def __init__(self, error: object):
        self.error = error
        if isinstance(error, dict):
            message = f"Graph error {error.get('code')}: {error.get('message')}"
        else:
            message = f"Graph error: {error}"
        super().__init__(message)


class SnapshotError(AEMError):
    """Raised when a persisted snapshot cannot be written."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Snapshot write failed for {path}: {reason}")
