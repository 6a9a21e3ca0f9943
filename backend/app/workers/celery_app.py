import os
from celery import Celery
from kombu import Queue

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

REAP_INTERVAL_SECONDS = int(os.getenv("MOBILE_CONTAINER_REAP_INTERVAL_SECONDS", "60"))
RECONCILE_INTERVAL_SECONDS = int(os.getenv("MOBILE_CONTAINER_RECONCILE_INTERVAL_SECONDS", "300"))

celery_app = Celery(
    "mobile_preview_workers",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["app.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_track_started=True,
    task_time_limit=900,
    task_soft_time_limit=840,

    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    task_queues=(
        Queue("default", routing_key="default"),
        Queue("mobile_containers", routing_key="mobile_containers"),
    ),

    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_routes={
        "app.workers.tasks.reap_idle_mobile_containers_task": {"queue": "mobile_containers"},
        "app.workers.tasks.reconcile_mobile_containers_task": {"queue": "mobile_containers"},
    },

    beat_schedule={
        "reap-idle-mobile-containers": {
            "task": "app.workers.tasks.reap_idle_mobile_containers_task",
            "schedule": float(max(REAP_INTERVAL_SECONDS, 10)),
        },
        "reconcile-mobile-containers": {
            "task": "app.workers.tasks.reconcile_mobile_containers_task",
            "schedule": float(max(RECONCILE_INTERVAL_SECONDS, 30)),
        },
    },

    result_expires=86400,

    broker_connection_retry_on_startup=True,
)
