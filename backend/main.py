from contextlib import asynccontextmanager
from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI
import logging
import os

# Load environment variables BEFORE importing any modules that might need them
load_dotenv(Path(__file__).parent / ".env")

import redis.asyncio as redis

from app.services.mobile_container_client import RailwayContainerClient
from app.services.mobile_metro_health import MetroHealthChecker
from app.services.mobile_qr_code import build_qr_code_cache_from_env
from app.services.mobile_rate_limiter import build_rate_limiter_from_env


logger = logging.getLogger(__name__)


def _state_redis_client():
    backend = os.getenv("MOBILE_PREVIEW_STATE_BACKEND", "memory").strip().lower()
    if backend != "redis":
        return None
    return redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"), decode_responses=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the shared mobile preview components once per process."""
    redis_client = _state_redis_client()
    app.state.container_client = RailwayContainerClient.from_env()
    app.state.qr_code_cache = build_qr_code_cache_from_env(redis_client)
    app.state.qr_rate_limiter = build_rate_limiter_from_env(redis_client)
    app.state.metro_health_checker = MetroHealthChecker.from_env()
    if not app.state.container_client.is_configured:
        logger.warning("RAILWAY_API_TOKEN is not set; mobile preview provisioning will fail")
    logger.info("Mobile preview state backend: %s", "redis" if redis_client is not None else "memory")

    yield

    if redis_client is not None:
        await redis_client.aclose()


app = FastAPI(title="Mobile Preview Runtime API", version="0.1.0", lifespan=lifespan)

# Add CORS middleware
from fastapi.middleware.cors import CORSMiddleware

cors_origins_raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001")
cors_origins = [o.strip() for o in cors_origins_raw.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

from app.api.routers import mobile_preview

app.include_router(mobile_preview.router)


@app.get("/health")
def health_check():
    """Reports service health for uptime monitors."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
