import time
from typing import Any, Optional

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from costingest.shared.core.config import Settings, get_settings

logger = structlog.get_logger()

SLOW_QUERY_THRESHOLD_SECONDS = 0.2


def _before_cursor_execute(conn: Any, cursor: Any, statement: Any, parameters: Any, context: Any, executemany: Any) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def _after_cursor_execute(conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: Any) -> None:
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )


def create_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Build the async engine for DATABASE_URL."""
    settings = settings or get_settings()
    pool_args: dict[str, Any] = {}
    if settings.TESTING or settings.DATABASE_URL.startswith("sqlite"):
        from sqlalchemy.pool import NullPool

        pool_args["poolclass"] = NullPool
    else:
        pool_args["pool_size"] = settings.DB_POOL_SIZE
        pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW
        pool_args["pool_pre_ping"] = True
        pool_args["pool_recycle"] = 300

    engine = create_async_engine(settings.DATABASE_URL, echo=settings.DB_ECHO, **pool_args)
    event.listen(engine.sync_engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", _after_cursor_execute)
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
