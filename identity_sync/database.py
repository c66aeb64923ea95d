"""
Database engine and session setup for the local identity store.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

from identity_sync.schema import SchemaBase

logger = logging.getLogger(__name__)


def create_engine_from_config(config: Dict[str, Any]) -> Engine:
    """
    Create a SQLAlchemy engine from the ``database`` configuration section.

    SQLite URLs get a plain engine with a busy timeout so concurrent writers
    wait for each other; server databases get a bounded connection pool.

    Args:
        config: Database configuration dictionary

    Returns:
        Configured engine
    """
    url = config['url']
    echo = config.get('echo', False)

    if url.startswith('sqlite'):
        engine = create_engine(url, echo=echo, connect_args={'timeout': 30})
    else:
        engine = create_engine(
            url,
            echo=echo,
            pool_size=config.get('pool_size', 5),
            max_overflow=config.get('max_overflow', 0),
            pool_pre_ping=True,
        )

    logger.debug(f"Created database engine for {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Return a session factory whose sessions do not expire loaded rows on commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create all identity tables that do not exist yet."""
    SchemaBase.metadata.create_all(engine)
    logger.info("Database schema is up to date")


def pool_capacity(engine: Engine) -> Optional[int]:
    """
    Return the maximum number of concurrent connections of the engine's pool.

    Returns None when the pool does not impose a limit.
    """
    pool = engine.pool
    size = getattr(pool, 'size', None)
    overflow = getattr(pool, '_max_overflow', None)
    if not callable(size) or overflow is None:
        return None
    if overflow < 0:
        return None
    return size() + overflow


