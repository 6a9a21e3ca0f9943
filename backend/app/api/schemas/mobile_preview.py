from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class QRCodeRequest(_CamelModel):
    # Range checks happen in the generator so a bad option comes back as a 400 with its message.
    size: Optional[int] = None
    format: Optional[str] = None
    error_correction_level: Optional[str] = Field(default=None, alias="errorCorrectionLevel")
    margin: Optional[int] = None


class QRCodeResponse(_CamelModel):
    data: str
    svg: Optional[str] = None
    data_url: str = Field(alias="dataUrl")
    url: str
    format: str
    size: int
    error_correction_level: str = Field(alias="errorCorrectionLevel")
    margin: int
    generated_at: datetime = Field(alias="generatedAt")
    cached: bool


class RateLimitErrorResponse(_CamelModel):
    error: str
    reset_in: int = Field(alias="resetIn")


class ResourceUsageResponse(_CamelModel):
    cpu: Optional[float] = None
    ram: Optional[float] = None
    network: Optional[float] = None


class MobilePreviewProvisionResponse(_CamelModel):
    container_id: str = Field(alias="containerId")
    metro_url: str = Field(alias="metroUrl")
    db_id: UUID = Field(alias="dbId")
    status: str


class MobilePreviewStatusResponse(_CamelModel):
    container_id: str = Field(alias="containerId")
    status: str
    metro_url: Optional[str] = Field(default=None, alias="metroUrl")
    resource_usage: ResourceUsageResponse = Field(alias="resourceUsage")
    uptime_seconds: Optional[int] = Field(default=None, alias="uptimeSeconds")
    last_activity_at: Optional[datetime] = Field(default=None, alias="lastActivityAt")


class ContainerLogEntryResponse(_CamelModel):
    timestamp: Optional[datetime] = None
    level: str
    message: str
    source: str


class ContainerLogsResponse(_CamelModel):
    logs: List[ContainerLogEntryResponse]
    has_more: bool = Field(alias="hasMore")
    cursor: Optional[str] = None
