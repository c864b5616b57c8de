import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from bmsex.config.bmsex_config import BMSEXConfig

# Configure logging
logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Database connection manager for BMSEX

    Handles SQLite and PostgreSQL connections with connection pooling.
    ``sqlite:///:memory:`` uses a single shared connection so tests see one
    database across sessions.
    """

    def __init__(self, config: Optional[BMSEXConfig] = None, url: Optional[str] = None):
        """
        Initialize database connection

        Args:
            config: BMSEXConfig instance. If None, the default configuration is used.
            url: SQLAlchemy URL; overrides the configured database
        """
        self.config = config or BMSEXConfig()
        self.url = url or self._url_from_config()
        self.engine: Engine = self._create_engine(self.url)
        self.Session = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False
        )

    def _url_from_config(self) -> str:
        db_config = self.config.get('database', {}) or {}
        db_type = db_config.get('type', 'sqlite')

        if db_type == 'sqlite':
            db_path = (db_config.get('sqlite') or {}).get('path', 'bmsex.db')
            if db_path != ':memory:':
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            return f'sqlite:///{db_path}'

        if db_type in ('postgresql', 'postgres'):
            from urllib.parse import quote_plus

            postgres_config = db_config.get('postgres', db_config.get('postgresql', {})) or {}
            host = postgres_config.get('host', 'localhost')
            port = postgres_config.get('port', 5432)
            database = postgres_config.get('database', 'bmsex')
            user = quote_plus(postgres_config.get('user', 'postgres'))
            password = quote_plus(postgres_config.get('password', ''))
            return f'postgresql://{user}:{password}@{host}:{port}/{database}'

        raise ValueError(f"Unsupported database type: {db_type}")

    def _create_engine(self, url: str) -> Engine:
        if url.startswith('sqlite'):
            if ':memory:' in url or url == 'sqlite://':
                engine = create_engine(
                    url,
                    poolclass=StaticPool,
                    connect_args={'check_same_thread': False}
                )
            else:
                engine = create_engine(
                    url,
                    poolclass=QueuePool,
                    pool_size=5,
                    max_overflow=10,
                    pool_timeout=30,
                    connect_args={'timeout': 30, 'check_same_thread': False}
                )

            # Enable foreign key support
            @event.listens_for(engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        return create_engine(url, poolclass=QueuePool, pool_size=5, max_overflow=10, pool_recycle=1800)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session

        Yields:
            SQLAlchemy session, closed on exit
        """
        session = self.Session()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with transaction management

        Yields:
            SQLAlchemy session, committed on success and rolled back on error
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database transaction error: {str(e)}")
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def create_tables(self) -> None:
        """Create all tables"""
        # Register the models on Base before create_all
        from bmsex.db import models  # noqa: F401
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
