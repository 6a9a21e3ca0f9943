from .celery_app import celery_app
from .tasks import reap_idle_mobile_containers_task, reconcile_mobile_containers_task

__all__ = [
    "celery_app",
    "reap_idle_mobile_containers_task",
    "reconcile_mobile_containers_task",
]
