from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
import os

from .settings.config import settings

raw_url = settings.DATABASE_URL
if raw_url.startswith("postgresql+psycopg"):
    # if someone provided a sync URL by mistake, upgrade it to async
    DATABASE_URL = raw_url.replace("postgresql+psycopg2", "postgresql+asyncpg").replace(
        "postgresql+psycopg", "postgresql+asyncpg"
    )
else:
    DATABASE_URL = raw_url

engine_kwargs = {"echo": False, "future": True}
if DATABASE_URL.startswith("sqlite"):
    # aiosqlite connections are bound to the loop that opened them
    engine_kwargs["poolclass"] = NullPool
else:
    engine_kwargs["pool_pre_ping"] = True

engine = create_async_engine(DATABASE_URL, **engine_kwargs)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
Base = declarative_base()


async def get_db():
    async with async_session_maker() as session:
        yield session


async def init_db():
    # Only run create_all in dev, never in prod with Alembic
    if os.getenv("RUN_DB_CREATE_ALL") == "1":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name
