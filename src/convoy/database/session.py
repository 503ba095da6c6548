"""Database session management."""

from pathlib import Path

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from convoy.config import get_settings

logger = structlog.get_logger(__name__)

# Cache for engines to avoid recreating them
_engines: dict[str, Engine] = {}
_session_factories: dict[str, sessionmaker] = {}


def get_db_url(db_url: str | None = None) -> str:
    """Resolve the database URL, creating the directory of a SQLite file if needed."""
    db_url = db_url or get_settings().database_url

    url = make_url(db_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return db_url


def get_engine(db_url: str | None = None) -> Engine:
    """Get or create database engine for a specific URL."""
    db_url = get_db_url(db_url)

    if db_url not in _engines:
        logger.debug("creating_db_engine", url=db_url)
        if "sqlite" in db_url:
            _engines[db_url] = create_engine(
                db_url,
                echo=False,
                connect_args={"check_same_thread": False},
            )
        else:
            _engines[db_url] = create_engine(
                db_url,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
                echo=False,
            )
    return _engines[db_url]


def get_session_factory(db_url: str | None = None) -> sessionmaker:
    """Get or create session factory for a specific URL."""
    db_url = get_db_url(db_url)

    if db_url not in _session_factories:
        engine = get_engine(db_url)
        _session_factories[db_url] = sessionmaker(bind=engine, autoflush=False)
    return _session_factories[db_url]


def init_db(db_url: str | None = None) -> None:
    """Create all tables."""
    from convoy.database.models import Base

    engine = get_engine(db_url)
    Base.metadata.create_all(engine)
    logger.info("database_initialized", url=str(engine.url))


def dispose_engines() -> int:
    """Dispose every cached engine and forget the cached session factories.

    Returns:
        Number of engines disposed
    """
    disposed = 0
    for url, engine in list(_engines.items()):
        engine.dispose()
        disposed += 1
        logger.debug("db_engine_disposed", url=url)

    _engines.clear()
    _session_factories.clear()
    return disposed
