import asyncio
from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text

from app.core.config import settings
from app.core.setup_logger import db_logger
from app.core.logger import info, warning


Base = declarative_base()


def _engine_kwargs(url: str) -> dict:
    kwargs = {"pool_pre_ping": True, "echo": settings.DEBUG}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=10)
    return kwargs


async def connect_with_retry(url: str, retries: int = 5, delay: float = 3, timeout: float = 10) -> AsyncEngine:
    """Create async engine with retry logic, each attempt bounded by ``timeout`` seconds."""
    for attempt in range(retries):
        engine = create_async_engine(url, **_engine_kwargs(url))
        try:
            async def _ping():
                async with engine.begin() as connection:
                    await connection.execute(text("SELECT 1"))

            await asyncio.wait_for(_ping(), timeout=timeout)
            return engine
        except Exception as e:
            await engine.dispose()
            if attempt == retries - 1:
                raise
            warning(db_logger, f"Database connection attempt {attempt + 1} failed, retrying in {delay} seconds...",
                    context={"error": str(e), "error_type": type(e).__name__})
            await asyncio.sleep(delay)


class Database:
    """
    Owns the async engine and session factory for one process.

    Built once at start-up and handed to the queue client, the worker pool and
    the advisory lock service.
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.async_database_url
        self.engine: Optional[AsyncEngine] = None
        self.SessionLocal: Optional[async_sessionmaker] = None

    @property
    def is_connected(self) -> bool:
        return self.engine is not None

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name if self.engine is not None else ""

    async def connect(self, retries: int = 5, delay: float = 3, timeout: float = 10) -> "Database":
        """Initialize database connection."""
        if self.engine is None:
            self.engine = await connect_with_retry(self.url, retries=retries, delay=delay, timeout=timeout)
            self.SessionLocal = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )
            info(db_logger, "Async database connection initialized", context={"dialect": self.dialect_name})
        return self

    def session(self) -> AsyncSession:
        if self.SessionLocal is None:
            raise RuntimeError("Database is not connected")
        return self.SessionLocal()

    async def create_tables(self):
        # models must be imported so their tables are registered on Base.metadata
        import app.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.SessionLocal = None
            info(db_logger, "Database connections closed")


async def connect_queue_store(url: Optional[str] = None) -> Optional[Database]:
    """
    Connect to the queue store within the configured timeout.

    Returns None when the store is unreachable: callers then run without
    background processing instead of failing.
    """
    database = Database(url)
    try:
        await database.connect(
            retries=settings.QUEUE_CONNECT_RETRIES,
            delay=1,
            timeout=settings.QUEUE_CONNECT_TIMEOUT,
        )
    except Exception as e:
        warning(db_logger, "Queue store unreachable, continuing without background processing", context={
            "error": str(e),
            "error_type": type(e).__name__,
        })
        return None
    return database
