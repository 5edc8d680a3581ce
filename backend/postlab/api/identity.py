"""Identity resolution for quota bucketing and session lookup."""

from datetime import datetime, timezone
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from postlab.api.database import Database, sessions, users
from postlab.models.schemas import (
    Identity,
    IdentityKind,
    Session,
    SessionUser,
    UserContext,
)


def resolve_identity(
    user_id: Optional[str] = None, anonymous_id: Optional[str] = None
) -> Optional[Identity]:
    """
    Pick the identifier used to bucket usage.

    The authenticated user id always wins. Returns None when neither is
    present; callers treat that as an unmetered request rather than blocking.
    """
    if user_id and user_id.strip():
        return Identity(kind=IdentityKind.USER, value=user_id.strip())
    if anonymous_id and anonymous_id.strip():
        return Identity(kind=IdentityKind.ANONYMOUS, value=anonymous_id.strip())

    logger.warning("No user ID or anonymous ID provided for usage tracking")
    return None


class SessionProvider:
    """Looks up sessions created by the sign-in flow."""

    def __init__(self, database: Database):
        self.database = database

    def get_session(self, token: Optional[str]) -> Optional[Session]:
        """
        Get the session for a token.

        Expired or unknown tokens yield None. Storage errors are logged and
        also yield None so that an unreachable store only downgrades the
        request to anonymous.
        """
        if not token:
            return None

        try:
            with self.database.connect() as conn:
                row = conn.execute(
                    select(
                        sessions.c.expires_at,
                        users.c.id,
                        users.c.name,
                        users.c.image,
                    )
                    .join(users, users.c.id == sessions.c.user_id)
                    .where(sessions.c.token == token)
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"Session lookup failed: {e}")
            return None

        if row is None:
            return None

        expires_at = row.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            logger.debug(f"Session for user {row.id} expired at {expires_at}")
            return None

        return Session(
            user=SessionUser(id=row.id, name=row.name, image=row.image),
            expires_at=expires_at,
        )

    def get_user_context(self, user_id: str) -> Optional[UserContext]:
        """Load the author's bio / audience / AI context, if they filled any in."""
        try:
            with self.database.connect() as conn:
                row = conn.execute(
                    select(users.c.bio, users.c.target_audience, users.c.ai_context).where(
                        users.c.id == user_id
                    )
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"User context lookup failed for {user_id}: {e}")
            return None

        if row is None:
            return None
        return UserContext(
            bio=row.bio, target_audience=row.target_audience, ai_context=row.ai_context
        )


def extract_session_token(
    authorization: Optional[str], cookies: dict[str, str], cookie_name: str
) -> Optional[str]:
    """Session token from a Bearer header, falling back to the session cookie."""
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return cookies.get(cookie_name) or None
