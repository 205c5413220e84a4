from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

from storefront.core.config import Settings, settings

Base = declarative_base()

def get_database_url(config: Settings = settings) -> str:
    db_url = config.DATABASE_URL
    if "postgresql" in db_url and "ssl" not in db_url and config.is_production:
        return f"{db_url}?ssl=require"
    return db_url

def build_engine(config: Settings = settings) -> AsyncEngine:
    return create_async_engine(get_database_url(config), echo=config.SQL_ECHO)

def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

engine = build_engine()
async_session_maker = build_session_maker(engine)

def is_postgres(session: AsyncSession) -> bool:
    return session.bind.dialect.name == "postgresql"

def dialect_insert(session: AsyncSession, model):
    """INSERT construct supporting ON CONFLICT for the session's dialect."""
    if is_postgres(session):
        return postgresql.insert(model)
    return sqlite.insert(model)

async def create_all(bind: AsyncEngine) -> None:
    # Imported for table registration on Base.metadata
    import storefront.models.registry  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
