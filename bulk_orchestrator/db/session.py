from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase

from bulk_orchestrator.settings import settings

engine = create_async_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

class Base(DeclarativeBase):
    pass

async def create_tables(bind: AsyncEngine = engine) -> None:
    # Local/dev bootstrap; production schemas are managed out of band.
    import bulk_orchestrator.db.models  # noqa: F401  (registers the tables)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
