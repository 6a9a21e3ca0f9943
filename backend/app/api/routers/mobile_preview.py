import logging
from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    Principal,
    get_current_principal,
    get_lifecycle_service,
    get_qr_code_cache,
    get_rate_limiter,
)
from app.api.schemas.mobile_preview import (
    ContainerLogEntryResponse,
    ContainerLogsResponse,
    MobilePreviewProvisionResponse,
    MobilePreviewStatusResponse,
    QRCodeRequest,
    QRCodeResponse,
    RateLimitErrorResponse,
    ResourceUsageResponse,
)
from app.db.postgres.models.mobile_containers import MobileContainer, MobileContainerStatus
from app.db.postgres.models.tasks import Task, is_mobile_platform
from app.db.postgres.session import get_db
from app.services.mobile_container_lifecycle import (
    ContainerSnapshot,
    MobileContainerLifecycleService,
    MobileContainerProvisioningError,
    MonitoringError,
    TaskNotFoundError,
    UnsupportedTaskPlatformError,
)
from app.services.mobile_qr_code import (
    DEFAULT_QR_FORMAT,
    DEFAULT_QR_SIZE,
    QRCodeCache,
    QRCodeOptions,
    QRCodeResult,
    build_qr_cache_key,
    generate_qr_code,
)
from app.services.mobile_rate_limiter import RateLimitResult
from app.services.task_access import get_task_for_user


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["mobile-preview"])

PROVISIONING_FAILED_DETAIL = "Failed to start mobile preview, please retry"
NO_BUNDLER_URL_DETAIL = "No Metro bundler URL found for this task"


def _rate_limit_headers(rate_limit: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(rate_limit.limit),
        "X-RateLimit-Remaining": str(rate_limit.remaining),
        "X-RateLimit-Reset": str(rate_limit.reset_in_seconds),
    }


def _qr_to_response(result: QRCodeResult, *, cached: bool) -> QRCodeResponse:
    return QRCodeResponse(
        data=result.data,
        svg=result.svg,
        data_url=result.data_url,
        url=result.url,
        format=result.format,
        size=result.size,
        error_correction_level=result.error_correction_level,
        margin=result.margin,
        generated_at=result.generated_at,
        cached=cached,
    )


def _snapshot_to_response(snapshot: ContainerSnapshot) -> MobilePreviewStatusResponse:
    return MobilePreviewStatusResponse(
        container_id=snapshot.container_id,
        status=snapshot.status,
        metro_url=snapshot.metro_url,
        resource_usage=ResourceUsageResponse(**snapshot.resource_usage),
        uptime_seconds=snapshot.uptime_seconds,
        last_activity_at=snapshot.last_activity_at,
    )


def _is_live(container: Optional[MobileContainer]) -> bool:
    if container is None:
        return False
    return getattr(container.status, "value", container.status) in {
        MobileContainerStatus.provisioning.value,
        MobileContainerStatus.running.value,
    }


async def _require_task(db: AsyncSession, task_id: str, principal: Principal) -> Task:
    task = await get_task_for_user(db, task_id, principal.user_id, is_admin=principal.is_admin)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def _resolve_bundler_url(task: Task, container: Optional[MobileContainer]) -> Optional[str]:
    if container is not None and container.metro_url:
        return container.metro_url
    if task.sandbox_url and is_mobile_platform(task.platform):
        return task.sandbox_url
    return None


@router.post("/{task_id}/qr-code", response_model=QRCodeResponse)
async def create_task_qr_code(
    task_id: str,
    response: Response,
    payload: Optional[QRCodeRequest] = Body(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: MobileContainerLifecycleService = Depends(get_lifecycle_service),
    qr_cache: QRCodeCache = Depends(get_qr_code_cache),
    rate_limiter=Depends(get_rate_limiter),
):
    rate_limit = await rate_limiter.check_rate_limit(principal.user_id)
    if not rate_limit.allowed:
        headers = _rate_limit_headers(rate_limit)
        headers["Retry-After"] = str(rate_limit.reset_in_seconds)
        return JSONResponse(
            status_code=429,
            content=RateLimitErrorResponse(
                error="Rate limit exceeded", reset_in=rate_limit.reset_in_seconds
            ).model_dump(by_alias=True),
            headers=headers,
        )

    task = await _require_task(db, task_id, principal)
    container = await lifecycle.get_container_for_task(task_id)
    metro_url = _resolve_bundler_url(task, container)
    if not metro_url:
        raise HTTPException(status_code=400, detail=NO_BUNDLER_URL_DETAIL)

    body = payload or QRCodeRequest()
    options = QRCodeOptions.from_values(
        size=body.size,
        format=body.format,
        error_correction_level=body.error_correction_level,
        margin=body.margin,
    )
    cache_key = build_qr_cache_key(task_id, options.format, options.size)

    async def _generate() -> QRCodeResult:
        return generate_qr_code(metro_url, options)

    result, cached = await qr_cache.get_or_generate(cache_key, _generate)
    if result.error:
        logger.info("QR generation rejected for task %s: %s", task_id, result.error)
        raise HTTPException(status_code=400, detail=result.error)

    if _is_live(container):
        await lifecycle.update_activity(container.provider_container_id)

    response.headers.update(_rate_limit_headers(rate_limit))
    response.headers["Cache-Control"] = "private, max-age=3600"
    return _qr_to_response(result, cached=cached)


@router.get("/{task_id}/qr-code", response_model=QRCodeResponse)
async def get_task_qr_code(
    task_id: str,
    format: str = Query(DEFAULT_QR_FORMAT),
    size: int = Query(DEFAULT_QR_SIZE),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    qr_cache: QRCodeCache = Depends(get_qr_code_cache),
):
    await _require_task(db, task_id, principal)
    cached = await qr_cache.get(build_qr_cache_key(task_id, format.strip().lower(), size))
    if cached is None:
        raise HTTPException(status_code=404, detail="QR code not found. Generate one with POST first.")
    return _qr_to_response(cached, cached=True)


@router.post("/{task_id}/mobile-preview", response_model=MobilePreviewProvisionResponse)
async def start_mobile_preview(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    lifecycle: MobileContainerLifecycleService = Depends(get_lifecycle_service),
):
    try:
        provisioned = await lifecycle.provision_container(task_id, principal.user_id, is_admin=principal.is_admin)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Task not found")
    except UnsupportedTaskPlatformError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except MobileContainerProvisioningError:
        logger.exception("Mobile preview provisioning failed for task %s", task_id)
        raise HTTPException(status_code=503, detail=PROVISIONING_FAILED_DETAIL)
    return MobilePreviewProvisionResponse(
        container_id=provisioned.container_id,
        metro_url=provisioned.metro_url,
        db_id=provisioned.db_id,
        status=provisioned.status,
    )


@router.get("/{task_id}/mobile-preview", response_model=MobilePreviewStatusResponse)
async def get_mobile_preview_status(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: MobileContainerLifecycleService = Depends(get_lifecycle_service),
):
    await _require_task(db, task_id, principal)
    container = await lifecycle.get_container_for_task(task_id)
    if container is None:
        raise HTTPException(status_code=404, detail="Mobile preview not found")

    container_id = container.provider_container_id
    try:
        snapshot = await lifecycle.monitor_container(container_id)
    except MonitoringError as exc:
        # Serve the last persisted observation; the row is a cache of provider state.
        logger.warning("Serving stale status for container %s: %s", container_id, exc)
        container = await lifecycle.get_container_for_task(task_id)
        snapshot = lifecycle.snapshot(container)
    if snapshot.status in {MobileContainerStatus.provisioning.value, MobileContainerStatus.running.value}:
        await lifecycle.update_activity(container_id)
    return _snapshot_to_response(snapshot)


@router.delete("/{task_id}/mobile-preview", response_model=MobilePreviewStatusResponse)
async def stop_mobile_preview(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: MobileContainerLifecycleService = Depends(get_lifecycle_service),
):
    await _require_task(db, task_id, principal)
    container = await lifecycle.get_container_for_task(task_id)
    if container is None:
        raise HTTPException(status_code=404, detail="Mobile preview not found")
    snapshot = await lifecycle.stop_container(container.provider_container_id, reason="user_requested")
    return _snapshot_to_response(snapshot)


@router.get("/{task_id}/mobile-preview/logs", response_model=ContainerLogsResponse)
async def get_mobile_preview_logs(
    task_id: str,
    limit: int = Query(100, ge=1, le=1000),
    cursor: Optional[str] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: MobileContainerLifecycleService = Depends(get_lifecycle_service),
):
    await _require_task(db, task_id, principal)
    container = await lifecycle.get_container_for_task(task_id)
    if container is None:
        raise HTTPException(status_code=404, detail="Mobile preview not found")
    page = await lifecycle.get_container_logs(container.provider_container_id, limit=limit, cursor=cursor)
    return ContainerLogsResponse(
        logs=[
            ContainerLogEntryResponse(
                timestamp=entry.timestamp,
                level=entry.level,
                message=entry.message,
                source=entry.source,
            )
            for entry in page.logs
        ],
        has_more=page.has_more,
        cursor=page.cursor,
    )
