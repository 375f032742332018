"""
SQLAlchemy Async Database Configuration.

PostgreSQL is the production store. SQLite (aiosqlite) is supported for local
runs and tests; since it has no row locks, every SQLite transaction is opened
with BEGIN IMMEDIATE so concurrent writers queue on the database lock instead.
"""

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker

from app.config import get_settings
from app.models.base import Base  # Import from models package

settings = get_settings()


def is_sqlite_url(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    """Take the write lock at BEGIN and enforce foreign keys."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine with pool and locking settings for the backend."""
    if is_sqlite_url(url):
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": settings.LOCK_TIMEOUT_SECONDS},
        )
        _install_sqlite_locking(engine)
        return engine

    return create_async_engine(
        url,
        echo=echo,
        pool_size=20,
        max_overflow=40,
        pool_timeout=10,       # Fail fast instead of blocking for 30s
        pool_recycle=900,
        pool_pre_ping=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine_for(settings.DATABASE_URL, echo=settings.DEBUG)

# Async Session Factory
async_session_maker = create_session_maker(engine)


async def get_db() -> AsyncSession:
    """
    Dependency for FastAPI routes to get a database session.

    Lifecycle services commit their own transactions so that notifications
    go out strictly after commit; anything left open here is rolled back.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
