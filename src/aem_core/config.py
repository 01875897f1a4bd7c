"""Environment-driven settings for the AEM reporter."""
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


REPORT_FILE_NAME = "aem_invocations.json"
CONFIG_FILE_NAME = "aem_configs.json"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class AEMSettings(BaseModel):
    """Reporter settings."""

    app_id: Optional[str] = Field(None, description="Graph app id owning the AEM edges")
    access_token: Optional[str] = Field(None, description="Graph access token (never logged)")
    graph_api_version: str = Field("v12.0", description="Graph API version prefix")
    data_dir: Path = Field(Path("data/aem"), description="Directory for persisted snapshots")
    enabled: bool = Field(True, description="Whether AEM reporting starts enabled")
    api_key: Optional[str] = Field(None, description="Key required on the ingestion API")

    @property
    def report_file_path(self) -> Path:
        return self.data_dir / REPORT_FILE_NAME

    @property
    def config_file_path(self) -> Path:
        return self.data_dir / CONFIG_FILE_NAME

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self.access_token)

    @classmethod
    def from_env(cls) -> "AEMSettings":
        """Build settings from AEM_* environment variables."""
        return cls(
            app_id=os.getenv("AEM_APP_ID"),
            access_token=os.getenv("AEM_ACCESS_TOKEN"),
            graph_api_version=os.getenv("AEM_GRAPH_API_VERSION", "v12.0"),
            data_dir=Path(os.getenv("AEM_DATA_DIR", "data/aem")),
            enabled=_env_flag("AEM_ENABLED", True),
            api_key=os.getenv("AEM_API_KEY"),
        )
