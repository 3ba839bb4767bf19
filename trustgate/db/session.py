"""
Database session and connection pool setup.

Every store call is bounded:
- pool_timeout: max seconds to wait for a pooled connection
- statement_timeout: server-side limit per statement (PostgreSQL only)

Both surface as SQLAlchemy errors which the repository layer turns into
StoreUnavailable, so the resolvers can apply their fail-open policies.
"""

import logging
import time
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from trustgate.config import settings
from trustgate.core.errors import ConfigurationError

logger = logging.getLogger("trustgate.db")

SLOW_QUERY_THRESHOLD_MS = settings.SLOW_QUERY_THRESHOLD_MS

# override upserts need INSERT .. ON CONFLICT
SUPPORTED_DIALECTS = ("postgresql", "sqlite")


def build_engine(url: str) -> Engine:
    """Create an engine with pool and statement bounds applied for PostgreSQL."""
    backend = make_url(url).get_backend_name()
    if backend not in SUPPORTED_DIALECTS:
        raise ConfigurationError(f"unsupported database backend: {backend}", backend=backend)
    if backend != "postgresql":
        return create_engine(url, echo=settings.DB_ECHO)

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        connect_args={
            "connect_timeout": max(1, settings.STORE_STATEMENT_TIMEOUT_MS // 1000),
            "options": f"-c statement_timeout={settings.STORE_STATEMENT_TIMEOUT_MS}",
        },
        echo=settings.DB_ECHO,
    )


def install_slow_query_log(engine: Engine) -> None:
    @event.listens_for(engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        total_ms = (time.perf_counter() - conn.info["query_start_time"].pop()) * 1000

        if total_ms >= SLOW_QUERY_THRESHOLD_MS:
            stmt_preview = statement[:500] + "..." if len(statement) > 500 else statement
            logger.warning(
                "Slow query detected",
                extra={
                    "duration_ms": round(total_ms, 2),
                    "statement": stmt_preview,
                },
            )


engine = build_engine(settings.database_url)
install_slow_query_log(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_pool_status() -> dict:
    """Connection pool status for the health endpoint."""
    pool = engine.pool
    status = {"pool": type(pool).__name__}
    if isinstance(pool, QueuePool):
        status.update(
            {
                "pool_size": pool.size(),
                "checked_in": pool.checkedin(),
                "checked_out": pool.checkedout(),
                "overflow": pool.overflow(),
            }
        )
    return status
