import os
import logging
from typing import Optional
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
from models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///autoquiz.db"


class DatabaseService:
    """Async SQLAlchemy engine for the embedded SQLite database"""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.database_url = database_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        if echo is None:
            echo = os.getenv("DB_ECHO", "false").lower() in ("1", "true", "yes")
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None

    @property
    def is_memory_database(self) -> bool:
        database = make_url(self.database_url).database
        return not database or database == ":memory:"

    def _setup_engine(self):
        """Setup the async engine; SQLite connections get foreign keys enforced"""
        try:
            engine_kwargs = {"echo": self.echo}
            if self.is_memory_database:
                # one shared connection, otherwise every checkout sees an empty database
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}

            self.engine = create_async_engine(self.database_url, **engine_kwargs)

            if self.engine.dialect.name == "sqlite":
                event.listen(self.engine.sync_engine, "connect", self._set_sqlite_pragma)

            logger.info(f"Database engine created for {self.engine.url.render_as_string(hide_password=True)}")
        except Exception as e:
            logger.error(f"Failed to create database engine: {e}")
            raise

    @staticmethod
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        """Enable cascading foreign keys on every new SQLite connection"""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    async def connect(self) -> AsyncEngine:
        """Create the engine if needed and ensure the schema exists"""
        if self.engine is None:
            self._setup_engine()

        try:
            async with self.engine.begin() as connection:
                await connection.run_sync(Base.metadata.create_all)
            logger.info("Database tables ensured via SQLAlchemy metadata")
        except Exception as e:
            logger.error(f"Failed to create database tables: {e}")
            raise
        return self.engine

    async def disconnect(self):
        """Dispose of the engine and its pooled connections"""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("Database engine disposed")

    def get_engine(self) -> Optional[AsyncEngine]:
        """Get the SQLAlchemy engine"""
        return self.engine

    def get_connection_info(self) -> dict:
        """Get database connection pool information"""
        if not self.engine:
            return {"status": "disconnected"}

        try:
            pool = self.engine.pool
            return {
                "status": "connected",
                "dialect": self.engine.dialect.name,
                "driver": self.engine.dialect.driver,
                "pool": pool.status(),
            }
        except Exception as e:
            logger.error(f"Failed to get connection info: {e}")
            return {"status": "error", "error": str(e)}

    async def test_connection(self) -> bool:
        """Test database connectivity"""
        if not self.engine:
            return False
        try:
            async with self.engine.connect() as connection:
                result = await connection.execute(text("SELECT 1"))
                result.fetchone()
            logger.info("Database connection test successful")
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False
