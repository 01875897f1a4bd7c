"""AEM reporter layer.

Tracks App-Link invocations and uploads aggregated conversions:
- Deep link parsing (al_applink_data)
- Versioned configuration store (per config mode)
- Reporter orchestration (refresh, attribution, upload)

Persists to:
- JSON snapshots: data/aem/aem_invocations.json, data/aem/aem_configs.json
"""
from .applink import parse_url
from .config_store import ConfigurationStore
from .service import CONFIG_REFRESH_INTERVAL, AEMReporter, ReporterState

__all__ = [
    "AEMReporter",
    "ConfigurationStore",
    "ReporterState",
    "CONFIG_REFRESH_INTERVAL",
    "parse_url",
]
