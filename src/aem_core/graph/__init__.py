"""Graph API integration modules."""
from .client import CONVERSION_CONFIGS_EDGE, CONVERSIONS_EDGE, GraphClient, GraphRequest
from .exceptions import AEMError, GraphApiError, GraphResponseError, SnapshotError

__all__ = [
    "GraphClient",
    "GraphRequest",
    "CONVERSION_CONFIGS_EDGE",
    "CONVERSIONS_EDGE",
    "AEMError",
    "GraphApiError",
    "GraphResponseError",
    "SnapshotError",
]
