import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Configure logging
logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Database connection manager for JobEX

    Wraps a SQLite engine and hands out sessions. Pass path=':memory:' for
    a throwaway database shared across sessions of one process.
    """

    def __init__(self, path: str = 'jobex.db', echo: bool = False):
        self.path = path
        self.engine: Engine = self._create_engine(path, echo)
        self.Session = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False
        )

    @staticmethod
    def _create_engine(path: str, echo: bool) -> Engine:
        if path == ':memory:':
            engine = create_engine(
                'sqlite://',
                echo=echo,
                poolclass=StaticPool,
                connect_args={'check_same_thread': False}
            )
        else:
            db_path = Path(path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                f'sqlite:///{db_path}',
                echo=echo,
                connect_args={'check_same_thread': False, 'timeout': 30}
            )

        @event.listens_for(engine, 'connect')
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute('PRAGMA foreign_keys=ON')
            cursor.close()

        return engine

    def initialize(self) -> None:
        """Create tables"""
        # Register models on Base before create_all
        from jobex.db import models  # noqa: F401
        Base.metadata.create_all(self.engine)
        logger.info(f"Database initialized at {self.path}")

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def session(self) -> Session:
        return self.Session()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with transaction management

        Yields:
            SQLAlchemy session
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

    def close(self) -> None:
        self.engine.dispose()
