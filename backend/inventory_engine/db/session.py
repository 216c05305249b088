"""Database engine and session factory."""

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import sessionmaker

from inventory_engine.core.config import settings


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine, handling SQLite specially for check_same_thread."""
    connect_args = {}
    pool_config = {}

    if database_url.startswith("sqlite"):
        # Backend calls run in worker threads
        connect_args = {"check_same_thread": False, "timeout": 15}
        pool_config = {"pool_pre_ping": True}
    else:
        # PostgreSQL/MySQL connection pooling configuration
        pool_config = {
            "pool_size": 20,          # Concurrent snapshot queries and chunk writes
            "max_overflow": 40,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        echo=echo,
        **pool_config,
    )

    # Enable foreign key enforcement for SQLite
    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine(settings.database_url, echo=settings.debug and settings.log_level == "DEBUG")
SessionLocal = build_session_factory(engine)
