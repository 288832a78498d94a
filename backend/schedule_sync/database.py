"""
資料庫連線與 Session（Async SQLAlchemy）
- 遠端（正式資料來源）與本機持久層各自一個 engine，Base 也分開
- postgres:// / postgresql:// 一律改成 postgresql+asyncpg://
- 正式環境不要在啟動時 create_all（交給 Alembic）
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from schedule_sync.config import settings


def normalize_db_url(url: str) -> str:
    db_url = str(url or "").strip()
    # Render / 其他環境常給 postgres:// 或 postgresql://
    # Async 必須改成 postgresql+asyncpg://
    if db_url.startswith("postgres://"):
        db_url = "postgresql+asyncpg://" + db_url[len("postgres://"):]
    elif db_url.startswith("postgresql://"):
        db_url = "postgresql+asyncpg://" + db_url[len("postgresql://"):]
    elif db_url.startswith("postgresql+psycopg2://"):
        db_url = "postgresql+asyncpg://" + db_url[len("postgresql+psycopg2://"):]
    return db_url


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    db_url = normalize_db_url(url)
    if db_url in ("sqlite+aiosqlite://", "sqlite+aiosqlite:///:memory:"):
        # 記憶體 SQLite：所有連線共用同一個 connection，否則每次連線都是空庫
        return create_async_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(db_url, echo=echo, pool_pre_ping=True)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


class Base(DeclarativeBase):
    """遠端資料表（schedule_entries、schedule_change_logs）"""
    pass


class LocalBase(DeclarativeBase):
    """本機持久層資料表（local_kv_store）"""
    pass


async def init_remote_db(engine: AsyncEngine) -> None:
    # 僅開發 / 測試用；正式環境交給 Alembic
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_local_db(engine: AsyncEngine) -> None:
    # 本機資料庫跟著 App 走，啟動時自動建表
    async with engine.begin() as conn:
        await conn.run_sync(LocalBase.metadata.create_all)


remote_engine = make_engine(settings.database_url, echo=settings.debug)
local_engine = make_engine(settings.local_database_url)
RemoteSessionLocal = make_sessionmaker(remote_engine)
LocalSessionLocal = make_sessionmaker(local_engine)
