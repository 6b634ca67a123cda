from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)

from .config import settings
from .models import Base

engine = create_async_engine(settings.database_url, echo=False, future=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_models() -> None:
    # Simple autoload for tables; swap with Alembic in production.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
