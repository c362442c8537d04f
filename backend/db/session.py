"""Checkpoint store session configuration."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings


def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine for ``url`` (default: ``PERSISTENCE_URL``)."""
    settings = get_settings()
    return create_async_engine(
        url or settings.PERSISTENCE_URL,
        echo=settings.SQLALCHEMY_ECHO,
        future=True,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def open_checkpoint_manager(url: Optional[str] = None):
    """Checkpoint manager persisting to ``url``, with its tables created.

    Without a URL (and no ``PERSISTENCE_URL``) snapshots stay in memory.
    The caller closes the returned manager's session and disposes its engine.
    """
    from workflow.checkpoint import CheckpointManager

    url = url or get_settings().PERSISTENCE_URL
    if not url:
        return CheckpointManager()

    session = create_session_factory(create_engine(url))()
    manager = CheckpointManager(db_session=session)
    await manager.ensure_schema()
    return manager


async def close_checkpoint_manager(manager) -> None:
    """Close the session and engine behind a manager from ``open_checkpoint_manager``."""
    session = manager.db_session
    if session is None:
        return
    bind = session.bind
    await session.close()
    if bind is not None:
        await bind.dispose()
