from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from jukebox.core.config import get_settings


def build_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, connect_args={"timeout": 15})
    return create_async_engine(database_url, pool_pre_ping=True)


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=bind, expire_on_commit=False)


engine = build_engine(get_settings().database_url)
SessionLocal = build_sessionmaker(engine)


async def dispose_engine() -> None:
    await engine.dispose()
