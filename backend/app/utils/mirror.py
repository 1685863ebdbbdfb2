"""Best-effort local writes that follow a successful provider-side change."""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import StorageError

logger = logging.getLogger(__name__)


async def mirror_best_effort(db: AsyncSession, label: str, *entities, delete_stmt=None) -> bool:
    """Add ``entities`` (or run ``delete_stmt``) in a savepoint, then commit.

    Returns ``False`` and logs a warning instead of raising when the write
    fails: the provider already holds the authoritative resource and the next
    sync repairs the mirror. Only the savepoint is rolled back, so the rest of
    the session stays usable.
    """
    try:
        async with db.begin_nested():
            if delete_stmt is not None:
                await db.execute(delete_stmt)
            for entity in entities:
                db.add(entity)
    except SQLAlchemyError as e:
        err = StorageError(f"Could not save {label} locally: {e}")
        logger.warning("%s", err.message)
        return False
    await db.commit()
    return True
