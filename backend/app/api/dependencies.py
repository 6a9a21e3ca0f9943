from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import ROLE_ADMIN, decode_access_token
from app.db.postgres.session import get_db
from app.services.mobile_container_client import RailwayContainerClient
from app.services.mobile_container_lifecycle import MobileContainerLifecycleService
from app.services.mobile_metro_health import MetroHealthChecker
from app.services.mobile_qr_code import QRCodeCache, build_qr_code_cache_from_env
from app.services.mobile_rate_limiter import build_rate_limiter_from_env


bearer_scheme = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = decode_access_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Principal(user_id=str(payload["sub"]), role=str(payload.get("role") or "user"))


# Shared components live on app.state (built in the lifespan). Tests either
# override these dependencies or let them build in-memory defaults.

def get_container_client(request: Request) -> RailwayContainerClient:
    state = request.app.state
    if getattr(state, "container_client", None) is None:
        state.container_client = RailwayContainerClient.from_env()
    return state.container_client


def get_qr_code_cache(request: Request) -> QRCodeCache:
    state = request.app.state
    if getattr(state, "qr_code_cache", None) is None:
        state.qr_code_cache = build_qr_code_cache_from_env()
    return state.qr_code_cache


def get_rate_limiter(request: Request):
    state = request.app.state
    if getattr(state, "qr_rate_limiter", None) is None:
        state.qr_rate_limiter = build_rate_limiter_from_env()
    return state.qr_rate_limiter


def get_metro_health_checker(request: Request) -> MetroHealthChecker:
    state = request.app.state
    if getattr(state, "metro_health_checker", None) is None:
        state.metro_health_checker = MetroHealthChecker.from_env()
    return state.metro_health_checker


def get_lifecycle_service(
    db: AsyncSession = Depends(get_db),
    client: RailwayContainerClient = Depends(get_container_client),
    qr_cache: QRCodeCache = Depends(get_qr_code_cache),
    health_checker: MetroHealthChecker = Depends(get_metro_health_checker),
) -> MobileContainerLifecycleService:
    return MobileContainerLifecycleService(
        db,
        client,
        qr_cache=qr_cache,
        health_checker=health_checker,
    )
