"""Backend selection."""
import logging
from typing import Optional

from redis import asyncio as aioredis

from .backends.document import DocumentDatabase
from .backends.memory import InMemoryDatabase
from .backends.sql import SqlDatabase
from .config import Settings
from .database import Database
from .repositories import FeedbackFlowDatabase

logger = logging.getLogger(__name__)

_default_database: Optional[FeedbackFlowDatabase] = None


async def create_database(
    settings: Settings, redis_client: Optional[aioredis.Redis] = None
) -> FeedbackFlowDatabase:
    """
    Build and initialize the backend named by ``settings.db_backend``.

    Args:
        settings: Application settings
        redis_client: Client for the document backend; created from
            ``settings.redis_url`` when omitted

    Returns:
        An initialized database
    """
    backend = settings.db_backend.lower()
    if backend == "memory":
        database: FeedbackFlowDatabase = InMemoryDatabase()
    elif backend == "document":
        if redis_client is None:
            redis_client = await aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        database = DocumentDatabase(redis_client, settings.redis_prefix)
    else:
        database = SqlDatabase(Database(settings.database_url, echo=settings.database_echo))

    await database.initialize()
    logger.info(f"Using {database.backend_name} database backend")
    return database


async def get_database(settings: Optional[Settings] = None) -> FeedbackFlowDatabase:
    """Process-wide default database, created on first use."""
    global _default_database
    if _default_database is None:
        _default_database = await create_database(settings or Settings())
    return _default_database


async def reset_default_database() -> None:
    """Close and forget the process-wide default."""
    global _default_database
    if _default_database is not None:
        await _default_database.close()
        _default_database = None
