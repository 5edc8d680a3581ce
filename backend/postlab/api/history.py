"""Post history and global counters."""

from datetime import datetime, timezone
from typing import Optional

from loguru import logger
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from postlab.api.database import Database, global_stats, post_history

TOTAL_SIMULATIONS = "total_simulations"

PREVIEW_LENGTH = 100


def add_history_entry(
    database: Database,
    user_id: str,
    tweet_content: str,
    analysis: dict,
    image_data: Optional[str] = None,
) -> int:
    """
    Save an analysis for a signed-in user.

    Returns:
        The id of the created history entry

    Raises:
        SQLAlchemyError: If the store is unreachable
    """
    with database.connect() as conn:
        result = conn.execute(
            insert(post_history).values(
                user_id=user_id,
                tweet_content=tweet_content,
                analysis=analysis,
                image_data=image_data,
                created_at=datetime.now(timezone.utc),
            )
        )
        entry_id = result.inserted_primary_key[0]
    logger.info(f"History entry added: {entry_id} for user {user_id}")
    return entry_id


def _to_entry(row) -> dict:
    created_at = row.created_at
    return {
        "id": row.id,
        "tweet_content": row.tweet_content,
        "analysis": row.analysis,
        "image_data": row.image_data,
        "created_at": created_at.isoformat() if created_at else None,
        "preview": _generate_preview(row.tweet_content),
    }


def _generate_preview(tweet_content: str) -> str:
    """Generate a one-line preview of a post."""
    flattened = " ".join(tweet_content.split())
    if len(flattened) > PREVIEW_LENGTH:
        return f"{flattened[:PREVIEW_LENGTH]}..."
    return flattened


def get_history(database: Database, user_id: str, limit: Optional[int] = None) -> list[dict]:
    """Get a user's history entries, newest first."""
    query = (
        select(post_history)
        .where(post_history.c.user_id == user_id)
        .order_by(post_history.c.created_at.desc(), post_history.c.id.desc())
    )
    if limit:
        query = query.limit(limit)
    with database.connect() as conn:
        rows = conn.execute(query).all()
    return [_to_entry(row) for row in rows]


def get_history_entry(database: Database, user_id: str, entry_id: int) -> Optional[dict]:
    """Get one of a user's history entries by id."""
    with database.connect() as conn:
        row = conn.execute(
            select(post_history).where(
                post_history.c.id == entry_id, post_history.c.user_id == user_id
            )
        ).first()
    if row is None:
        logger.warning(f"History entry {entry_id} not found for user {user_id}")
        return None
    return _to_entry(row)


def clear_history(database: Database, user_id: str) -> int:
    """Delete all of a user's history. Returns the number of entries removed."""
    with database.connect() as conn:
        result = conn.execute(delete(post_history).where(post_history.c.user_id == user_id))
    return result.rowcount


def increment_stat(database: Database, stat_key: str = TOTAL_SIMULATIONS) -> int:
    """
    Atomically increment a global counter, creating it on first use.

    Returns:
        The counter value after the increment
    """
    bump = (
        update(global_stats)
        .where(global_stats.c.stat_key == stat_key)
        .values(value=global_stats.c.value + 1)
    )
    try:
        with database.connect() as conn:
            if conn.execute(bump).rowcount == 0:
                conn.execute(insert(global_stats).values(stat_key=stat_key, value=1))
    except IntegrityError:
        with database.connect() as conn:
            conn.execute(bump)
    return get_stat(database, stat_key)


def get_stat(database: Database, stat_key: str = TOTAL_SIMULATIONS) -> int:
    """Current value of a global counter (0 if never incremented)."""
    with database.connect() as conn:
        value = conn.execute(
            select(global_stats.c.value).where(global_stats.c.stat_key == stat_key)
        ).scalar_one_or_none()
    return value or 0
