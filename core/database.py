"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    poolclass=NullPool,  # Invocations are short lived; no pooled connections between them
    future=True
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


def dialect_insert(session: AsyncSession, table):
    """
    Return an INSERT construct supporting ON CONFLICT for the session's dialect.

    PostgreSQL is the production store; SQLite shares the same
    on_conflict_do_nothing / on_conflict_do_update API.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)
