from sqlmodel import SQLModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from lifescanner.config import settings
import lifescanner.models  # noqa: F401  registers the tables on SQLModel.metadata

def _engine_options(database_url: str) -> dict:
    # aiosqlite connections must not outlive the event loop that opened them
    if database_url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {"pool_pre_ping": True, "pool_recycle": 300}

# Async engine for database operations
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    future=True,
    **_engine_options(settings.database_url)
)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)

async def create_db_and_tables():
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

async def drop_db_and_tables():
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

async def check_database() -> bool:
    async with AsyncSessionLocal() as db:
        await db.execute(text("SELECT 1"))
    return True

async def get_async_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
