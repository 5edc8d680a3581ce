"""Per-identity daily usage ledger and model-tier policy."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger
from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from postlab.api.database import Database, usage_tracking
from postlab.models.schemas import Identity, IdentityKind, ModelTier, UsageDecision, iso_utc

# Daily limit for post analyses
DAILY_LIMIT = 8

# First N analyses of the day use the premium model
PREMIUM_LIMIT = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today_utc(now: datetime) -> str:
    """Calendar day (YYYY-MM-DD) in UTC."""
    return now.astimezone(timezone.utc).date().isoformat()


def next_reset(now: datetime) -> datetime:
    """Next UTC midnight."""
    day = now.astimezone(timezone.utc).date() + timedelta(days=1)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def select_tier(count: int) -> ModelTier:
    """Premium for the first PREMIUM_LIMIT analyses of the day, lite afterwards."""
    return ModelTier.PREMIUM if PREMIUM_LIMIT - count > 0 else ModelTier.LITE


def is_allowed(count: int) -> bool:
    return DAILY_LIMIT - count > 0


def build_decision(count: int, now: datetime) -> UsageDecision:
    """Quota decision for an identity that has used `count` analyses today."""
    remaining = max(0, DAILY_LIMIT - count)
    premium_remaining = max(0, PREMIUM_LIMIT - count)
    return UsageDecision(
        allowed=is_allowed(count),
        remaining=remaining,
        reset_at=next_reset(now),
        is_premium_tier=select_tier(count) is ModelTier.PREMIUM,
        premium_remaining=premium_remaining,
    )


def _identity_column(identity: Identity):
    if identity.kind is IdentityKind.USER:
        return usage_tracking.c.user_id
    return usage_tracking.c.anonymous_id


class UsageLedger:
    """
    Usage counter keyed by (identity, UTC day).

    Checks fail open: if the store cannot be read the identity gets a full
    quota. Increments are best-effort and only report success/failure.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self.database = database
        self.clock = clock

    def get_count(self, identity: Identity) -> int:
        """
        Analyses consumed today by this identity (0 if no record).

        Raises:
            SQLAlchemyError: If the store is unreachable
        """
        today = today_utc(self.clock())
        with self.database.connect() as conn:
            count = conn.execute(
                select(usage_tracking.c.analysis_count).where(
                    _identity_column(identity) == identity.value,
                    usage_tracking.c.reset_date == today,
                )
            ).scalar_one_or_none()
        return count or 0

    def check(self, identity: Optional[Identity]) -> UsageDecision:
        """Current quota decision for an identity."""
        now = self.clock()
        if identity is None:
            return build_decision(0, now)

        try:
            count = self.get_count(identity)
        except SQLAlchemyError as e:
            # Allow on error so an unreachable store doesn't take the feature down
            logger.error(f"Error checking usage for {identity.kind.value} identity: {e}")
            return build_decision(0, now)

        return build_decision(count, now)

    def increment(self, identity: Optional[Identity]) -> bool:
        """
        Add one analysis to today's record, creating it if absent.

        Only call after a validated analysis. Returns False (and logs) on
        failure; never raises.
        """
        if identity is None:
            logger.warning("No identifier for usage increment")
            return False

        now = self.clock()
        today = today_utc(now)
        try:
            try:
                with self.database.connect() as conn:
                    if self._bump(conn, identity, today, now) == 0:
                        conn.execute(self._insert_first(identity, today, now))
            except IntegrityError:
                # A concurrent request created today's record first
                logger.debug(f"Usage row for {identity.value} created concurrently, retrying update")
                with self.database.connect() as conn:
                    self._bump(conn, identity, today, now)
        except SQLAlchemyError as e:
            logger.error(f"Usage increment failed for {identity.kind.value} identity: {e}")
            return False

        return True

    def try_consume(self, identity: Optional[Identity]) -> bool:
        """
        Atomically consume one analysis if the identity is under the daily limit.

        The increment and the limit check happen in a single statement, so two
        concurrent callers can never push the count past DAILY_LIMIT.
        Returns False when the limit is reached or the store fails.
        """
        if identity is None:
            logger.warning("No identifier for usage increment")
            return False

        now = self.clock()
        today = today_utc(now)
        try:
            try:
                with self.database.connect() as conn:
                    if self._bump(conn, identity, today, now, under_limit=True) == 1:
                        return True
                    exists = conn.execute(
                        select(usage_tracking.c.id).where(
                            _identity_column(identity) == identity.value,
                            usage_tracking.c.reset_date == today,
                        )
                    ).first()
                    if exists is not None:
                        logger.info(f"Daily limit already reached for {identity.kind.value} identity, not charged")
                        return False
                    conn.execute(self._insert_first(identity, today, now))
                    return True
            except IntegrityError:
                with self.database.connect() as conn:
                    return self._bump(conn, identity, today, now, under_limit=True) == 1
        except SQLAlchemyError as e:
            logger.error(f"Usage increment failed for {identity.kind.value} identity: {e}")
            return False

    def stats(self, identity: Optional[Identity]) -> dict:
        """Usage summary for display."""
        decision = self.check(identity)
        return {
            "used": DAILY_LIMIT - decision.remaining,
            "remaining": decision.remaining,
            "limit": DAILY_LIMIT,
            "resetAt": iso_utc(decision.reset_at),
            "isPremiumTier": decision.is_premium_tier,
            "premiumRemaining": decision.premium_remaining,
        }

    @staticmethod
    def _bump(
        conn: Connection,
        identity: Identity,
        today: str,
        now: datetime,
        under_limit: bool = False,
    ) -> int:
        stmt = update(usage_tracking).where(
            _identity_column(identity) == identity.value,
            usage_tracking.c.reset_date == today,
        )
        if under_limit:
            stmt = stmt.where(usage_tracking.c.analysis_count < DAILY_LIMIT)
        result = conn.execute(
            stmt.values(
                analysis_count=usage_tracking.c.analysis_count + 1,
                updated_at=now,
            )
        )
        return result.rowcount

    @staticmethod
    def _insert_first(identity: Identity, today: str, now: datetime):
        is_user = identity.kind is IdentityKind.USER
        return insert(usage_tracking).values(
            user_id=identity.value if is_user else None,
            anonymous_id=None if is_user else identity.value,
            reset_date=today,
            analysis_count=1,
            created_at=now,
            updated_at=now,
        )
