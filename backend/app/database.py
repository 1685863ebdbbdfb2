import ssl

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from app.config import get_settings

settings = get_settings()

# Managed Postgres requires SSL; asyncpg needs an ssl.SSLContext
connect_args = {}
db_url = settings.async_database_url
if "localhost" not in db_url and "127.0.0.1" not in db_url and "@postgres:" not in db_url:
    ssl_ctx = ssl.create_default_context()
    ssl_ctx.check_hostname = False
    ssl_ctx.verify_mode = ssl.CERT_NONE
    connect_args["ssl"] = ssl_ctx

engine = create_async_engine(
    db_url,
    echo=settings.app_debug,
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=True,
    connect_args=connect_args,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def dialect_insert(session: AsyncSession, model):
    """Return an INSERT construct that supports ``on_conflict_do_update``.

    Production runs on PostgreSQL; the test-suite runs on SQLite. Both dialects
    expose the same ``on_conflict_do_update(index_elements=..., set_=...)`` API.
    """
    if session.get_bind().dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert
        return sqlite_insert(model)
    from sqlalchemy.dialects.postgresql import insert as pg_insert
    return pg_insert(model)
