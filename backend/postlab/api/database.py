"""
Relational store for PostLab.

Tables:
- usage_tracking: per identity, per UTC day analysis counter
- post_history: analyses saved for signed-in users
- global_stats: keyed counters (total_simulations, ...)
- user / session: rows owned by the identity provider, read-only here
"""

from contextlib import contextmanager
from typing import Iterator

from loguru import logger
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Engine,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Connection
from sqlalchemy.pool import StaticPool

metadata = MetaData()

usage_tracking = Table(
    "usage_tracking",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=True),
    Column("anonymous_id", String(255), nullable=True),
    Column("reset_date", String(10), nullable=False),  # YYYY-MM-DD, UTC
    Column("analysis_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("user_id", "reset_date", name="uq_usage_user_day"),
    UniqueConstraint("anonymous_id", "reset_date", name="uq_usage_anonymous_day"),
)

post_history = Table(
    "post_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False),
    Column("tweet_content", Text, nullable=False),
    Column("analysis", JSON, nullable=False),
    Column("image_data", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Index("idx_post_history_user_created", "user_id", "created_at"),
)

global_stats = Table(
    "global_stats",
    metadata,
    Column("stat_key", String(64), primary_key=True),
    Column("value", Integer, nullable=False, default=0),
)

users = Table(
    "user",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("name", String(255), nullable=True),
    Column("image", Text, nullable=True),
    Column("username", String(255), nullable=True),
    Column("bio", Text, nullable=True),
    Column("target_audience", Text, nullable=True),
    Column("ai_context", Text, nullable=True),
)

sessions = Table(
    "session",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("token", String(255), nullable=False, unique=True),
    Column("user_id", String(255), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
)


class Database:
    """Engine plus transactional connection helper."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine: Engine = self._create_engine(url, echo)

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        if url.startswith("sqlite"):
            kwargs: dict = {"connect_args": {"check_same_thread": False}}
            # In-memory SQLite only lives as long as its single connection
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                kwargs["poolclass"] = StaticPool
            return create_engine(url, echo=echo, **kwargs)
        return create_engine(url, echo=echo, pool_pre_ping=True)

    def create_all(self) -> None:
        """Create all tables. Idempotent."""
        metadata.create_all(bind=self.engine)
        logger.debug(f"Database tables ensured at {self.engine.url!r}")

    def drop_all(self) -> None:
        """Drop all tables. Only meant for tests."""
        metadata.drop_all(bind=self.engine)

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Connection inside a transaction; commits on success, rolls back on error."""
        with self.engine.begin() as conn:
            yield conn

    def dispose(self) -> None:
        self.engine.dispose()
