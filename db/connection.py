from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import get_settings
from errors import ConfigError


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create an async engine for the given URL, or DATABASE_URL."""
    settings = get_settings()
    url = database_url or settings.database_url
    if not url:
        raise ConfigError("DATABASE_URL is not set")

    options: dict = {"echo": settings.debug, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=10,          # persistent connections in the pool
            max_overflow=20,       # additional connections under burst load
            pool_timeout=30,       # seconds to wait for a connection before erroring
            pool_recycle=1800,     # recycle connections after 30 min to avoid stale handles
        )
    return create_async_engine(url, **options)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(engine: AsyncEngine):
    """Yield a session that commits on success and rolls back on error."""
    async with session_factory(engine)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
