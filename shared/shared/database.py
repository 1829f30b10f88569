from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def get_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    kwargs = {"echo": echo, "future": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    return create_async_engine(database_url, **kwargs)


def get_session(engine: AsyncEngine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
    )
