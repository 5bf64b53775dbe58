from pydantic import BaseModel, ConfigDict, Field

from config import APP_VERSION


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    version: str = APP_VERSION
    timestamp: int
    uptime: float  # Seconds since the process started
    active_servers: int = Field(alias="activeServers")


class VersionResponse(BaseModel):
    version: str = APP_VERSION
