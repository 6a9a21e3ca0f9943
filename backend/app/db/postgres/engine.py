import logging
import os
import urllib.parse

from sqlalchemy.ext.asyncio import create_async_engine as _create_async_engine, async_sessionmaker, AsyncEngine
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")

if DATABASE_URL:
    try:
        # Hosted Postgres providers hand out plain-text passwords in DATABASE_URL,
        # the driver needs special chars URL-encoded.
        if "://" in DATABASE_URL:
            scheme, rest = DATABASE_URL.split("://", 1)
            if scheme in {"postgres", "postgresql"}:
                scheme = "postgresql+psycopg"

            # Split at the LAST @ so passwords containing '@' survive.
            if "@" in rest:
                creds, location = rest.rsplit("@", 1)
                if ":" in creds:
                    u, p = creds.split(":", 1)
                    DATABASE_URL = f"{scheme}://{u}:{urllib.parse.quote_plus(p)}@{location}"
                else:
                    DATABASE_URL = f"{scheme}://{rest}"
            else:
                DATABASE_URL = f"{scheme}://{rest}"
    except ValueError as e:
        logger.error("Failed to re-encode DATABASE_URL password: %s", e)
else:
    user = os.getenv("POSTGRES_USER", "postgres")
    password = os.getenv("POSTGRES_PASSWORD", "")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "postgres")
    quoted_password = urllib.parse.quote_plus(password)
    DATABASE_URL = f"postgresql+psycopg://{user}:{quoted_password}@{host}:{port}/{db}"


def create_async_engine() -> AsyncEngine:
    """
    Creates and returns a new SQLAlchemy AsyncEngine instance.
    """
    url = DATABASE_URL.replace("postgresql+asyncpg://", "postgresql+psycopg://")
    logger.debug("Creating async engine for %s", url.split("@")[-1] if "@" in url else "local database")
    return _create_async_engine(
        url,
        echo=False,
        # Transaction poolers do their own health checks
        pool_pre_ping=False,
        poolclass=NullPool,
        # Disable prepared statements for PgBouncer compatibility (psycopg v3)
        connect_args={"prepare_threshold": None},
    )


engine = create_async_engine()

# Used in app/db/postgres/session.py and by the Celery tasks as:
# async with sessionmaker() as session:
sessionmaker = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
)
