import asyncio
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from celery.utils.log import get_task_logger

from app.workers.celery_app import celery_app

logger = get_task_logger(__name__)


def run_async(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


_metro_health_checker = None


def _get_metro_health_checker():
    # Failure counts must outlive a single sweep to ever reach the threshold.
    global _metro_health_checker
    if _metro_health_checker is None:
        from app.services.mobile_metro_health import MetroHealthChecker

        _metro_health_checker = MetroHealthChecker.from_env()
    return _metro_health_checker


def _build_lifecycle_service(db):
    from app.services.mobile_container_lifecycle import MobileContainerLifecycleService

    return MobileContainerLifecycleService(db, health_checker=_get_metro_health_checker())


@celery_app.task(name="app.workers.tasks.health_check")
def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@celery_app.task(bind=True, name="app.workers.tasks.reap_idle_mobile_containers_task")
def reap_idle_mobile_containers_task(self):
    """Stop idle containers, re-poll every live row, then health-check running bundlers."""

    async def _run():
        from app.db.postgres.session import worker_session

        async with worker_session() as db:
            service = _build_lifecycle_service(db)
            cleanup = await service.cleanup_inactive_containers()
            monitored = await service.monitor_active_containers()
            unhealthy_bundlers = await service.check_running_bundlers()

        for error in cleanup.errors:
            logger.warning(
                "idle teardown failed for container %s: %s",
                error.get("container_id"),
                error.get("error"),
            )
        return {
            "status": "ok",
            "stopped": cleanup.stopped_count,
            "errors": len(cleanup.errors),
            "monitored": monitored,
            "unhealthy_bundlers": unhealthy_bundlers,
        }

    return run_async(_run())


@celery_app.task(bind=True, name="app.workers.tasks.reconcile_mobile_containers_task")
def reconcile_mobile_containers_task(self, grace_seconds: Optional[int] = None):
    async def _run():
        from app.db.postgres.session import worker_session

        async with worker_session() as db:
            service = _build_lifecycle_service(db)
            result = await service.reconcile(grace_seconds=grace_seconds)

        if result.orphans_removed or result.candidates_failed:
            logger.info(
                "reconciliation removed %s orphans, resolved %s candidates, gave up on %s",
                result.orphans_removed,
                result.candidates_resolved,
                result.candidates_failed,
            )
        return {"status": "ok", **asdict(result)}

    return run_async(_run())
