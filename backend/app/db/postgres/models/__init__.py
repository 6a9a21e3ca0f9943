from .tasks import MOBILE_TASK_PLATFORMS, Task, TaskPlatform, is_mobile_platform
from .mobile_containers import (
    LIVE_MOBILE_CONTAINER_STATUSES,
    TERMINAL_MOBILE_CONTAINER_STATUSES,
    MobileContainer,
    MobileContainerReconciliationCandidate,
    MobileContainerStatus,
    ReconciliationReason,
    ReconciliationStatus,
)
