from __future__ import annotations

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.postgres.models.mobile_containers import (
    LIVE_MOBILE_CONTAINER_STATUSES,
    TERMINAL_MOBILE_CONTAINER_STATUSES,
    MobileContainer,
    MobileContainerReconciliationCandidate,
    MobileContainerStatus,
    ReconciliationReason,
    ReconciliationStatus,
)
from app.db.postgres.models.tasks import Task, is_mobile_platform
from app.services.mobile_container_client import (
    ContainerCreateResult,
    ContainerLogsResult,
    ContainerNotFoundError,
    ContainerSpec,
    ContainerStatusResult,
    ProviderError,
    ProviderTimeoutError,
    RailwayContainerClient,
    project_name_for_task,
)
from app.services.mobile_metro_health import (
    MetroHealthChecker,
    MetroHealthStatus,
    is_recoverable_error,
    parse_metro_logs,
)
from app.services.mobile_qr_code import QRCodeCache
from app.services.task_access import get_task_for_user


logger = logging.getLogger(__name__)

EVENT_CREATED = "created"
EVENT_STARTED = "started"
EVENT_STOPPED = "stopped"
EVENT_ERROR = "error"
EVENT_HEALTH_CHECK = "health_check"
EVENT_ACTIVITY = "activity"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_AMBIGUOUS = "ambiguous"

MAX_RESTART_ATTEMPTS = 3
MAX_RECONCILIATION_ATTEMPTS = 5

_RETRYABLE_MESSAGE_TOKENS = ("network", "timeout", "econnreset", "crashed")


@dataclass(frozen=True)
class MobileContainerLifecycleSettings:
    idle_timeout_seconds: int
    create_timeout_seconds: int
    monitor_max_attempts: int
    monitor_retry_base_seconds: float
    monitor_max_consecutive_failures: int
    reconcile_grace_seconds: int


@dataclass(frozen=True)
class ContainerCreateOutcome:
    kind: str
    result: Optional[ContainerCreateResult] = None
    error: Optional[BaseException] = None
    project_id: Optional[str] = None


@dataclass(frozen=True)
class ProvisionResult:
    container_id: str
    metro_url: str
    db_id: UUID
    status: str = MobileContainerStatus.provisioning.value
    reused: bool = False


@dataclass(frozen=True)
class ContainerSnapshot:
    container_id: str
    status: str
    resource_usage: Dict[str, Optional[float]]
    uptime_seconds: Optional[int]
    last_activity_at: Optional[datetime]
    metro_url: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class CleanupResult:
    stopped_count: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class ErrorHandlingResult:
    action: str
    message: str


@dataclass
class ReconciliationResult:
    candidates_resolved: int = 0
    candidates_failed: int = 0
    candidates_pending: int = 0
    orphans_removed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ContainerEvent:
    type: str
    container_id: str
    task_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = field(default_factory=dict)


ContainerEventCallback = Callable[[ContainerEvent], Union[None, Awaitable[None]]]


class MobileContainerLifecycleError(Exception):
    pass


class MobileContainerProvisioningError(MobileContainerLifecycleError):
    """Provisioning did not produce a usable container. Safe to retry."""


class UnsupportedTaskPlatformError(MobileContainerProvisioningError):
    pass


class MonitoringError(MobileContainerLifecycleError):
    pass


class TaskNotFoundError(MobileContainerLifecycleError):
    pass


class ContainerRecordNotFoundError(MobileContainerLifecycleError):
    pass


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _status_value(status: Any) -> str:
    return getattr(status, "value", status)


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, ContainerNotFoundError):
        return False
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, MonitoringError):
        return True
    message = str(error).lower()
    return any(token in message for token in _RETRYABLE_MESSAGE_TOKENS)


class MobileContainerLifecycleService:
    def __init__(
        self,
        db: AsyncSession,
        client: Optional[RailwayContainerClient] = None,
        *,
        settings: Optional[MobileContainerLifecycleSettings] = None,
        qr_cache: Optional[QRCodeCache] = None,
        health_checker: Optional[MetroHealthChecker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.client = client or RailwayContainerClient.from_env()
        self.settings = settings or self._load_settings()
        self.qr_cache = qr_cache
        self.health_checker = health_checker
        self._sleep = sleep
        self._listeners: List[ContainerEventCallback] = []

    @staticmethod
    def _load_settings() -> MobileContainerLifecycleSettings:
        idle_raw = int(os.getenv("MOBILE_CONTAINER_IDLE_TIMEOUT_SECONDS", "1800"))
        create_raw = int(os.getenv("MOBILE_PROVIDER_CREATE_TIMEOUT_SECONDS", "120"))
        attempts_raw = int(os.getenv("MOBILE_MONITOR_MAX_ATTEMPTS", "3"))
        retry_base_raw = float(os.getenv("MOBILE_MONITOR_RETRY_BASE_SECONDS", "1.0"))
        max_failures_raw = int(os.getenv("MOBILE_MONITOR_MAX_CONSECUTIVE_FAILURES", "5"))
        grace_raw = int(os.getenv("MOBILE_RECONCILE_GRACE_SECONDS", "600"))
        return MobileContainerLifecycleSettings(
            idle_timeout_seconds=max(idle_raw, 60),
            create_timeout_seconds=min(max(create_raw, 10), 900),
            monitor_max_attempts=min(max(attempts_raw, 1), 10),
            monitor_retry_base_seconds=max(retry_base_raw, 0.0),
            monitor_max_consecutive_failures=max(max_failures_raw, 1),
            reconcile_grace_seconds=max(grace_raw, 0),
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # Events

    def on_event(self, callback: ContainerEventCallback) -> None:
        self._listeners.append(callback)

    async def _emit(self, event: ContainerEvent) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Container event listener failed for %s event on %s", event.type, event.container_id)

    # Persistence helpers

    async def _get_row(self, container_id: str) -> Optional[MobileContainer]:
        result = await self.db.execute(
            select(MobileContainer)
            .where(MobileContainer.provider_container_id == container_id)
            .order_by(MobileContainer.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _require_row(self, container_id: str) -> MobileContainer:
        row = await self._get_row(container_id)
        if row is None:
            raise ContainerRecordNotFoundError(f"No mobile container record for {container_id}")
        return row

    async def _get_live_row_for_task(self, task_id: str) -> Optional[MobileContainer]:
        result = await self.db.execute(
            select(MobileContainer)
            .where(
                MobileContainer.task_id == task_id,
                MobileContainer.status.in_(LIVE_MOBILE_CONTAINER_STATUSES),
            )
            .order_by(MobileContainer.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def _live_rows(self) -> List[MobileContainer]:
        result = await self.db.execute(
            select(MobileContainer)
            .where(MobileContainer.status.in_(LIVE_MOBILE_CONTAINER_STATUSES))
            .order_by(MobileContainer.created_at.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    def _is_terminal(row: MobileContainer) -> bool:
        return _status_value(row.status) in {status.value for status in TERMINAL_MOBILE_CONTAINER_STATUSES}

    async def _apply_status(
        self,
        row: MobileContainer,
        status: MobileContainerStatus,
        **values: Any,
    ) -> bool:
        """Move a row forward to ``status``.

        Terminal rows are never revived or rewritten, and a running row never
        falls back to provisioning.
        """
        await self.db.flush()
        now = self._now()
        update_values: Dict[str, Any] = {"status": status, "updated_at": now, **values}
        if status in TERMINAL_MOBILE_CONTAINER_STATUSES:
            update_values.setdefault("stopped_at", now)
        allowed_sources = (
            (MobileContainerStatus.provisioning,)
            if status == MobileContainerStatus.provisioning
            else LIVE_MOBILE_CONTAINER_STATUSES
        )
        result = await self.db.execute(
            update(MobileContainer)
            .where(
                MobileContainer.id == row.id,
                MobileContainer.status.in_(allowed_sources),
            )
            .values(**update_values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(row)
        return (result.rowcount or 0) > 0

    def snapshot(self, row: MobileContainer) -> ContainerSnapshot:
        usage = dict(row.resource_usage or {})
        return ContainerSnapshot(
            container_id=row.provider_container_id,
            status=_status_value(row.status),
            resource_usage={
                "cpu": usage.get("cpu"),
                "ram": usage.get("ram"),
                "network": usage.get("network"),
            },
            uptime_seconds=row.uptime_seconds,
            last_activity_at=_as_utc(row.last_activity_at),
            metro_url=row.metro_url,
            last_error=row.last_error,
        )

    async def _record_candidate(
        self,
        *,
        reason: ReconciliationReason,
        task_id: Optional[str],
        user_id: Optional[str],
        provider_container_id: Optional[str] = None,
        provider_project_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> Optional[MobileContainerReconciliationCandidate]:
        candidate = MobileContainerReconciliationCandidate(
            task_id=task_id,
            user_id=user_id,
            provider_container_id=provider_container_id,
            provider_project_id=provider_project_id,
            reason=reason,
            status=ReconciliationStatus.pending,
            detail=detail,
            attempts=0,
        )
        self.db.add(candidate)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(
                "Could not record %s reconciliation candidate for task %s (container=%s project=%s)",
                reason.value,
                task_id,
                provider_container_id,
                provider_project_id,
            )
            return None
        return candidate

    # Provisioning

    def _container_spec(self, task: Task, user_id: str) -> ContainerSpec:
        return ContainerSpec(
            task_id=str(task.id),
            user_id=str(user_id),
            project_name=project_name_for_task(str(task.id)),
            idle_timeout_seconds=self.settings.idle_timeout_seconds,
        )

    async def _create_at_provider(self, spec: ContainerSpec) -> ContainerCreateOutcome:
        try:
            created = await asyncio.wait_for(
                self.client.create_container(spec),
                timeout=self.settings.create_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            return ContainerCreateOutcome(kind=OUTCOME_AMBIGUOUS, error=exc)
        except ProviderTimeoutError as exc:
            return ContainerCreateOutcome(kind=OUTCOME_AMBIGUOUS, error=exc, project_id=exc.project_id)
        except ProviderError as exc:
            if exc.project_id:
                return ContainerCreateOutcome(kind=OUTCOME_AMBIGUOUS, error=exc, project_id=exc.project_id)
            return ContainerCreateOutcome(kind=OUTCOME_FAILURE, error=exc)
        return ContainerCreateOutcome(kind=OUTCOME_SUCCESS, result=created, project_id=created.project_id)

    async def _reuse_live_row(self, row: MobileContainer) -> Optional[ProvisionResult]:
        """Return the existing container when the provider still runs it, else retire the row."""
        try:
            observed = await self.client.get_container_status(row.provider_container_id)
        except ContainerNotFoundError as exc:
            await self._apply_status(row, MobileContainerStatus.stopped, last_error=str(exc))
            await self.db.commit()
            await self._emit(ContainerEvent(EVENT_STOPPED, row.provider_container_id, row.task_id, data={"reason": "not_found"}))
            return None
        except ProviderError as exc:
            logger.warning(
                "Provider unavailable while checking container %s for task %s; reusing existing row: %s",
                row.provider_container_id,
                row.task_id,
                exc,
            )
            return self._provision_result(row, reused=True)

        observed_status = MobileContainerStatus(observed.status)
        if observed_status in LIVE_MOBILE_CONTAINER_STATUSES:
            if observed_status == MobileContainerStatus.running and _status_value(row.status) != observed_status.value:
                await self._apply_status(row, MobileContainerStatus.running, last_observed_at=self._now())
                await self.db.commit()
            return self._provision_result(row, reused=True)

        await self._apply_status(row, observed_status, last_error=f"Provider reported {observed_status.value}")
        await self.db.commit()
        return None

    @staticmethod
    def _provision_result(row: MobileContainer, *, reused: bool = False) -> ProvisionResult:
        return ProvisionResult(
            container_id=row.provider_container_id,
            metro_url=row.metro_url,
            db_id=row.id,
            status=_status_value(row.status),
            reused=reused,
        )

    async def provision_container(self, task_id: str, user_id: str, *, is_admin: bool = False) -> ProvisionResult:
        task = await get_task_for_user(self.db, task_id, user_id, is_admin=is_admin)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if not is_mobile_platform(task.platform):
            raise UnsupportedTaskPlatformError(f"Task {task_id} is not a mobile task")
        owner_id = str(task.user_id)

        existing = await self._get_live_row_for_task(task_id)
        if existing is not None:
            reused = await self._reuse_live_row(existing)
            if reused is not None:
                return reused

        spec = self._container_spec(task, owner_id)
        outcome = await self._create_at_provider(spec)
        if outcome.kind == OUTCOME_FAILURE:
            logger.error("Container create failed for task %s: %s", task_id, outcome.error)
            raise MobileContainerProvisioningError(f"Container create failed for task {task_id}")
        if outcome.kind == OUTCOME_AMBIGUOUS:
            logger.error(
                "Container create for task %s has an unknown outcome (project=%s): %r",
                task_id,
                outcome.project_id,
                outcome.error,
            )
            await self._record_candidate(
                reason=ReconciliationReason.create_ambiguous,
                task_id=task_id,
                user_id=owner_id,
                provider_project_id=outcome.project_id,
                detail=str(outcome.error) or outcome.error.__class__.__name__,
            )
            raise MobileContainerProvisioningError(f"Container create for task {task_id} did not complete")

        created = outcome.result
        now = self._now()
        row = MobileContainer(
            task_id=task_id,
            user_id=owner_id,
            provider_container_id=created.container_id,
            provider_project_id=created.project_id,
            provider_service_id=created.service_id,
            metro_url=created.metro_url,
            status=MobileContainerStatus.provisioning,
            resource_usage={},
            consecutive_failures=0,
            restart_attempts=0,
            last_activity_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Container %s was created for task %s but its record could not be saved: %s",
                created.container_id,
                task_id,
                exc,
            )
            await self._record_candidate(
                reason=ReconciliationReason.persist_failed,
                task_id=task_id,
                user_id=owner_id,
                provider_container_id=created.container_id,
                provider_project_id=created.project_id,
                detail=str(exc),
            )
            raise MobileContainerProvisioningError(f"Container record for task {task_id} could not be saved") from exc

        logger.info("Provisioned mobile container %s for task %s", created.container_id, task_id)
        await self._emit(
            ContainerEvent(EVENT_CREATED, created.container_id, task_id, data={"metro_url": created.metro_url})
        )
        if self.qr_cache is not None:
            await self.qr_cache.invalidate_task(task_id)

        try:
            observed = await self.client.get_container_status(created.container_id)
        except ProviderError as exc:
            logger.info("Initial status check for container %s deferred to monitoring: %s", created.container_id, exc)
        else:
            if observed.status == MobileContainerStatus.running.value:
                await self._apply_status(
                    row,
                    MobileContainerStatus.running,
                    last_observed_at=self._now(),
                    resource_usage=observed.resource_usage.to_dict(),
                    uptime_seconds=observed.uptime_seconds,
                )
                await self.db.commit()
                await self._emit(ContainerEvent(EVENT_STARTED, created.container_id, task_id))

        return self._provision_result(row)

    # Monitoring

    async def _poll_status(self, container_id: str) -> ContainerStatusResult:
        attempts = self.settings.monitor_max_attempts
        last_error: Optional[ProviderError] = None
        for attempt in range(attempts):
            try:
                return await self.client.get_container_status(container_id)
            except ContainerNotFoundError:
                raise
            except ProviderError as exc:
                last_error = exc
                if attempt + 1 < attempts:
                    await self._sleep(self.settings.monitor_retry_base_seconds * (2 ** attempt))
        raise MonitoringError(f"Status unavailable for container {container_id}: {last_error}")

    async def monitor_container(self, container_id: str) -> ContainerSnapshot:
        row = await self._require_row(container_id)
        if self._is_terminal(row):
            return self.snapshot(row)

        try:
            observed = await self._poll_status(container_id)
        except ContainerNotFoundError as exc:
            await self._apply_status(row, MobileContainerStatus.stopped, last_error=str(exc))
            await self.db.commit()
            logger.info("Container %s no longer exists at provider; marked stopped", container_id)
            await self._emit(ContainerEvent(EVENT_STOPPED, container_id, row.task_id, data={"reason": "not_found"}))
            return self.snapshot(row)
        except MonitoringError as exc:
            row.consecutive_failures = (row.consecutive_failures or 0) + 1
            row.last_error = str(exc)
            await self.db.commit()
            logger.warning(
                "Monitoring container %s failed (%s consecutive): %s",
                container_id,
                row.consecutive_failures,
                exc,
            )
            raise

        previous_status = _status_value(row.status)
        observed_status = MobileContainerStatus(observed.status)
        if observed_status == MobileContainerStatus.provisioning and previous_status == MobileContainerStatus.running.value:
            # A redeploy of a running container (restart) keeps the row running.
            observed_status = MobileContainerStatus.running
        row.consecutive_failures = 0
        row.last_observed_at = self._now()
        values: Dict[str, Any] = {
            "resource_usage": observed.resource_usage.to_dict(),
            "uptime_seconds": observed.uptime_seconds,
            "last_observed_at": row.last_observed_at,
            "consecutive_failures": 0,
        }
        if observed_status in TERMINAL_MOBILE_CONTAINER_STATUSES:
            values["last_error"] = f"Provider reported {observed_status.value}"
        applied = await self._apply_status(row, observed_status, **values)
        await self.db.commit()

        await self._emit(
            ContainerEvent(EVENT_HEALTH_CHECK, container_id, row.task_id, data={"status": observed_status.value})
        )
        if applied and previous_status != observed_status.value:
            event_type = {
                MobileContainerStatus.running: EVENT_STARTED,
                MobileContainerStatus.stopped: EVENT_STOPPED,
                MobileContainerStatus.error: EVENT_ERROR,
            }.get(observed_status)
            if event_type:
                await self._emit(ContainerEvent(event_type, container_id, row.task_id))
        return self.snapshot(row)

    async def monitor_active_containers(self) -> int:
        """Re-attach to every live row after a restart. Returns how many were polled."""
        rows = await self._live_rows()
        container_ids = [row.provider_container_id for row in rows]
        monitored = 0
        for container_id in container_ids:
            try:
                await self.monitor_container(container_id)
            except MonitoringError as exc:
                row = await self._get_row(container_id)
                if row is not None and (row.consecutive_failures or 0) >= self.settings.monitor_max_consecutive_failures:
                    await self._apply_status(row, MobileContainerStatus.error, last_error=str(exc))
                    await self.db.commit()
                    logger.error(
                        "Container %s unreachable for %s consecutive checks; marked error",
                        container_id,
                        row.consecutive_failures,
                    )
                    await self._emit(ContainerEvent(EVENT_ERROR, container_id, row.task_id, data={"error": str(exc)}))
            monitored += 1
        return monitored

    # Teardown

    async def _teardown_at_provider(self, row: MobileContainer) -> None:
        await self.client.stop_container(row.provider_container_id)
        try:
            await self.client.delete_container(row.provider_container_id)
        except ProviderError as exc:
            logger.warning("Project cleanup for container %s deferred: %s", row.provider_container_id, exc)
            await self._record_candidate(
                reason=ReconciliationReason.orphaned,
                task_id=row.task_id,
                user_id=row.user_id,
                provider_container_id=row.provider_container_id,
                provider_project_id=row.provider_project_id,
                detail=f"delete failed: {exc}",
            )

    async def stop_container(self, container_id: str, reason: str = "stopped") -> ContainerSnapshot:
        row = await self._require_row(container_id)
        if self._is_terminal(row):
            return self.snapshot(row)

        try:
            await self._teardown_at_provider(row)
        except ContainerNotFoundError:
            pass
        except ProviderError as exc:
            await self._apply_status(row, MobileContainerStatus.error, last_error=f"stop failed: {exc}")
            await self.db.commit()
            logger.error("Stopping container %s failed: %s", container_id, exc)
            await self._record_candidate(
                reason=ReconciliationReason.orphaned,
                task_id=row.task_id,
                user_id=row.user_id,
                provider_container_id=row.provider_container_id,
                provider_project_id=row.provider_project_id,
                detail=f"stop failed: {exc}",
            )
            await self._emit(ContainerEvent(EVENT_ERROR, container_id, row.task_id, data={"error": str(exc)}))
            return self.snapshot(row)

        await self._apply_status(row, MobileContainerStatus.stopped, last_error=None)
        await self.db.commit()
        logger.info("Stopped container %s (%s)", container_id, reason)
        await self._emit(ContainerEvent(EVENT_STOPPED, container_id, row.task_id, data={"reason": reason}))
        return self.snapshot(row)

    async def cleanup_inactive_containers(self) -> CleanupResult:
        cutoff = self._now() - timedelta(seconds=self.settings.idle_timeout_seconds)
        idle_ids = [
            row.provider_container_id
            for row in await self._live_rows()
            if (_as_utc(row.last_activity_at) or _as_utc(row.created_at) or cutoff) < cutoff
        ]
        result = CleanupResult()
        for container_id in idle_ids:
            try:
                snapshot = await self.stop_container(container_id, reason="inactivity")
            except (MobileContainerLifecycleError, SQLAlchemyError) as exc:
                result.errors.append({"container_id": container_id, "error": str(exc)})
                continue
            if snapshot.status == MobileContainerStatus.stopped.value:
                result.stopped_count += 1
            else:
                result.errors.append({"container_id": container_id, "error": snapshot.last_error or "stop failed"})
        if idle_ids:
            logger.info("Idle cleanup stopped %s of %s containers", result.stopped_count, len(idle_ids))
        return result

    # Errors & health

    async def handle_container_error(self, container_id: str, error: BaseException) -> ErrorHandlingResult:
        row = await self._require_row(container_id)
        if not is_retryable_error(error):
            await self._mark_failed(row, str(error))
            return ErrorHandlingResult("marked_failed", f"Container marked as failed: {error}")

        row.restart_attempts = (row.restart_attempts or 0) + 1
        if row.restart_attempts >= MAX_RESTART_ATTEMPTS:
            await self._mark_failed(row, f"Max retries exceeded: {error}")
            return ErrorHandlingResult("marked_failed", f"Container marked as failed after {row.restart_attempts} attempts: {error}")
        await self.db.commit()

        await self._sleep(self.settings.monitor_retry_base_seconds * (2 ** (row.restart_attempts - 1)))
        try:
            await self.client.start_container(container_id)
        except ProviderError as exc:
            await self._mark_failed(row, f"Restart failed: {exc}")
            return ErrorHandlingResult("marked_failed", f"Restart failed: {exc}")

        logger.info("Restarted container %s (attempt %s)", container_id, row.restart_attempts)
        await self._emit(ContainerEvent(EVENT_STARTED, container_id, row.task_id, data={"restart": row.restart_attempts}))
        return ErrorHandlingResult("restarted", f"Container restarted (attempt {row.restart_attempts}/{MAX_RESTART_ATTEMPTS})")

    async def _mark_failed(self, row: MobileContainer, message: str) -> None:
        await self._apply_status(row, MobileContainerStatus.error, last_error=message)
        row.restart_attempts = 0
        await self.db.commit()
        await self._emit(ContainerEvent(EVENT_ERROR, row.provider_container_id, row.task_id, data={"error": message}))

    async def check_bundler_health(self, container_id: str) -> MetroHealthStatus:
        if self.health_checker is None:
            self.health_checker = MetroHealthChecker.from_env()
        row = await self._require_row(container_id)
        status = await self.health_checker.check_health(row.metro_url)
        await self._emit(
            ContainerEvent(
                EVENT_HEALTH_CHECK,
                container_id,
                row.task_id,
                data={"healthy": status.healthy, "consecutive_failures": status.consecutive_failures},
            )
        )
        if status.healthy or self._is_terminal(row) or not self.health_checker.is_past_threshold(status):
            return status

        logs = await self.get_container_logs(container_id, limit=200)
        diagnosis = parse_metro_logs("\n".join(entry.message for entry in logs.logs))
        if diagnosis.has_error and not is_recoverable_error(diagnosis.error_type):
            await self._mark_failed(row, diagnosis.error_message or "Metro bundler failed")
        else:
            reason = diagnosis.error_message or status.error or "Metro bundler unreachable"
            await self.handle_container_error(container_id, MonitoringError(f"{reason} (network)"))
        self.health_checker.reset(row.metro_url)
        return status

    async def check_running_bundlers(self) -> int:
        """Health-check every running bundler. Returns how many were unhealthy."""
        container_ids = [
            row.provider_container_id
            for row in await self._live_rows()
            if _status_value(row.status) == MobileContainerStatus.running.value
        ]
        unhealthy = 0
        for container_id in container_ids:
            status = await self.check_bundler_health(container_id)
            if not status.healthy:
                unhealthy += 1
        return unhealthy

    # Activity & lookups

    async def update_activity(self, container_id: str) -> None:
        await self.db.flush()
        result = await self.db.execute(
            update(MobileContainer)
            .where(
                MobileContainer.provider_container_id == container_id,
                MobileContainer.status.in_(LIVE_MOBILE_CONTAINER_STATUSES),
            )
            .values(last_activity_at=self._now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if (result.rowcount or 0) > 0:
            await self._emit(ContainerEvent(EVENT_ACTIVITY, container_id))

    async def get_container_for_task(self, task_id: str) -> Optional[MobileContainer]:
        live = await self._get_live_row_for_task(task_id)
        if live is not None:
            return live
        result = await self.db.execute(
            select(MobileContainer)
            .where(MobileContainer.task_id == task_id)
            .order_by(MobileContainer.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def get_container_logs(
        self,
        container_id: str,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> ContainerLogsResult:
        try:
            return await self.client.get_container_logs(container_id, limit=limit, cursor=cursor)
        except ProviderError as exc:
            logger.warning("Logs unavailable for container %s: %s", container_id, exc)
            return ContainerLogsResult(logs=[], has_more=False)

    # Reconciliation

    async def _resolve_candidate(
        self,
        candidate: MobileContainerReconciliationCandidate,
        tracked_ids: set,
    ) -> bool:
        if candidate.provider_container_id:
            if candidate.provider_container_id in tracked_ids:
                return True
            try:
                await self.client.stop_container(candidate.provider_container_id)
            except ContainerNotFoundError:
                pass
            await self.client.delete_container(candidate.provider_container_id)
            return True
        if candidate.provider_project_id:
            await self.client.delete_project(candidate.provider_project_id)
            return True
        # No id came back: the orphan sweep covers whatever was created.
        return False

    async def reconcile(self, grace_seconds: Optional[int] = None) -> ReconciliationResult:
        grace = self.settings.reconcile_grace_seconds if grace_seconds is None else max(0, grace_seconds)
        result = ReconciliationResult()
        tracked_ids = {row.provider_container_id for row in await self._live_rows()}

        pending = (
            await self.db.execute(
                select(MobileContainerReconciliationCandidate)
                .where(MobileContainerReconciliationCandidate.status == ReconciliationStatus.pending)
                .order_by(MobileContainerReconciliationCandidate.created_at.asc())
            )
        ).scalars().all()

        awaiting_sweep: List[MobileContainerReconciliationCandidate] = []
        for candidate in pending:
            candidate.attempts = (candidate.attempts or 0) + 1
            try:
                resolved = await self._resolve_candidate(candidate, tracked_ids)
            except ProviderError as exc:
                candidate.detail = f"{candidate.detail or ''}\nattempt {candidate.attempts}: {exc}".strip()
                if candidate.attempts >= MAX_RECONCILIATION_ATTEMPTS:
                    candidate.status = ReconciliationStatus.failed
                    result.candidates_failed += 1
                    logger.error("Giving up on reconciliation candidate %s: %s", candidate.id, exc)
                else:
                    result.candidates_pending += 1
                result.errors.append(str(exc))
                continue
            if resolved:
                candidate.status = ReconciliationStatus.resolved
                candidate.resolved_at = self._now()
                result.candidates_resolved += 1
            else:
                awaiting_sweep.append(candidate)
        await self.db.commit()

        try:
            provider_containers = await self.client.list_containers()
        except ProviderError as exc:
            logger.warning("Orphan sweep skipped, provider listing failed: %s", exc)
            result.errors.append(str(exc))
            result.candidates_pending += len(awaiting_sweep)
            return result

        cutoff = self._now() - timedelta(seconds=grace)
        young_untracked_projects = set()
        for container in provider_containers:
            if container.container_id in tracked_ids:
                continue
            created_at = _as_utc(container.created_at)
            if created_at is None or created_at > cutoff:
                young_untracked_projects.add(container.project_name)
                continue
            try:
                try:
                    await self.client.stop_container(container.container_id)
                except ContainerNotFoundError:
                    pass
                await self.client.delete_container(container.container_id)
            except ProviderError as exc:
                logger.warning("Could not remove orphaned container %s: %s", container.container_id, exc)
                result.errors.append(str(exc))
                continue
            result.orphans_removed += 1
            logger.info("Removed orphaned container %s (%s)", container.container_id, container.project_name)

        for candidate in awaiting_sweep:
            # A young untracked container under the task's project name may still be
            # the one this create produced; a later sweep removes it once past grace.
            if candidate.task_id and project_name_for_task(candidate.task_id) in young_untracked_projects:
                result.candidates_pending += 1
                continue
            candidate.status = ReconciliationStatus.resolved
            candidate.resolved_at = self._now()
            result.candidates_resolved += 1
        await self.db.commit()
        return result
