from .mobile_preview import (
    ContainerLogEntryResponse,
    ContainerLogsResponse,
    MobilePreviewProvisionResponse,
    MobilePreviewStatusResponse,
    QRCodeRequest,
    QRCodeResponse,
    RateLimitErrorResponse,
    ResourceUsageResponse,
)

__all__ = [
    "ContainerLogEntryResponse",
    "ContainerLogsResponse",
    "MobilePreviewProvisionResponse",
    "MobilePreviewStatusResponse",
    "QRCodeRequest",
    "QRCodeResponse",
    "RateLimitErrorResponse",
    "ResourceUsageResponse",
]
