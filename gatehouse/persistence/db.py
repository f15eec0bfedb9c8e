from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gatehouse.core.config import Settings, get_settings


SessionFactory = async_sessionmaker[AsyncSession]


def build_engine(settings: Settings | None = None, *, database_url: str | None = None, **overrides: Any) -> AsyncEngine:
    settings = settings or get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools and a server-side statement timeout.
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.db_command_timeout_s > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.db_command_timeout_s) * 1000)}
            }
    engine_kwargs.update(overrides)
    return create_async_engine(url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> SessionFactory:
    # Keep loaded rows usable after commit; stores hand out detached snapshots.
    return async_sessionmaker(engine, expire_on_commit=False)


@lru_cache
def get_engine() -> AsyncEngine:
    return build_engine(get_settings())


@lru_cache
def get_session_factory() -> SessionFactory:
    return build_session_factory(get_engine())
