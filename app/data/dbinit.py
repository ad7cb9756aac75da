from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from app.config.config import settings

import structlog

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _engine_kwargs(url: str) -> Dict[str, Any]:
    if not url.startswith("postgresql"):
        return {}
    kwargs: Dict[str, Any] = dict(
        # Configure connection pooling
        pool_pre_ping=True,  # Enable connection health checks
        pool_size=5,
        max_overflow=5,
        pool_recycle=3600    # Recycle connections after 1 hour
    )
    if settings.POSTGRES_SSL:
        kwargs["connect_args"] = {'ssl': 'require'}
    return kwargs


# Create the SQLAlchemy engine
engine = create_async_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    **_engine_kwargs(settings.SQLALCHEMY_DATABASE_URI),
)

SessionLocal = async_sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Important for async operations
)

# Base class for declarative models
Base = declarative_base()

from app.data import user  # noqa: E402,F401
from app.data import restaurant  # noqa: E402,F401
from app.data import subscription  # noqa: E402,F401
from app.data import payment  # noqa: E402,F401


async def get_db():
    db = SessionLocal()
    try:
        yield db
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


async def execute_sql(query, params=None, fetch=True):
    """
    Execute raw SQL query and optionally fetch results asynchronously
    """
    async with engine.begin() as conn:
        result = await conn.execute(text(query), params or {})
        if fetch:
            return result.fetchall()
        return None


# Initialize database on startup
async def init_db():
    # Create tables if they don't exist
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise
