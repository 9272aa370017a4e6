"""Database engine, session factory, and table creation."""

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import ExportPipelineConfig
from .models.base import Base
from .utils.logging import get_logger

logger = get_logger("export_pipeline.database")

_engine = None
_session_factory = None


def _is_sqlite(config: ExportPipelineConfig) -> bool:
    return config.database_url.startswith("sqlite")


def _is_memory(config: ExportPipelineConfig) -> bool:
    return ":memory:" in config.database_url


def _install_sqlite_pragmas(engine, config: ExportPipelineConfig) -> None:
    """busy_timeout and synchronous are per-connection; apply them on every connect."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={int(config.db_busy_timeout)}")
        cursor.execute(f"PRAGMA synchronous={config.db_synchronous}")
        cursor.close()


def get_engine(config: ExportPipelineConfig):
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        sqlite = _is_sqlite(config)
        _engine = create_async_engine(
            config.database_url,
            echo=config.debug,
            pool_pre_ping=True,
            connect_args={"timeout": 30} if sqlite else {},
        )
        if sqlite:
            _install_sqlite_pragmas(_engine, config)
    return _engine


def get_session_factory(config: ExportPipelineConfig) -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(config), expire_on_commit=False)
    return _session_factory


async def create_tables(config: ExportPipelineConfig) -> None:
    """Create all tables and switch file-backed SQLite databases to WAL."""
    engine = get_engine(config)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if config.db_wal_mode and _is_sqlite(config) and not _is_memory(config):
        async with engine.connect() as conn:
            mode = (await conn.execute(text("PRAGMA journal_mode=WAL"))).scalar()
            logger.info(
                "sqlite_journal_mode",
                mode=mode,
                busy_timeout=config.db_busy_timeout,
                synchronous=config.db_synchronous,
            )


async def close_engine() -> None:
    """Dispose of the engine and forget the singletons."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
