# backend/tests/conftest.py
import json
import os
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import pytest
from fastapi.testclient import TestClient
from loguru import logger

# The default app instance in postlab.api.main must not touch a real database
os.environ.setdefault("DATABASE_URL", "sqlite://")

from postlab.api.config import Settings
from postlab.api.database import Database, sessions, users
from postlab.api.main import create_app
from postlab.api.usage import UsageLedger
from postlab.models.schemas import AnalysisRequest, ModelTier

SAMPLE_ANALYSIS = {
    "tweet": "Shipping beats polishing. Ship the ugly version today.",
    "predicted_likes": 120,
    "predicted_retweets": 14,
    "predicted_replies": 9,
    "predicted_quotes": 2,
    "predicted_views": 4800,
    "engagement_outlook": "Medium",
    "engagement_justification": "Clear stance, but no question to invite replies.",
    "analysis": [
        "Hook: strong opening claim.",
        "Reply Potential: moderate, people like to disagree.",
        "Dwell: short, quick read.",
        "Share Value: bookmarkable for founders.",
    ],
    "suggestions": [
        {
            "version": "Curiosity",
            "tweet": "I shipped the ugliest version of my app. Here's what happened next.",
            "reason": "Opens a gap readers want closed.",
            "audience_reactions": ["What happened?", "Relatable", "Show us"],
        },
        {
            "version": "Authority",
            "tweet": "After 6 launches: shipping ugly wins every time.",
            "reason": "Experience signals credibility.",
            "audience_reactions": ["Agreed", "Which launches?", "Bookmarked"],
        },
    ],
}


def sample_json() -> str:
    return json.dumps(SAMPLE_ANALYSIS)


def split_fragments(text: str, size: int = 40) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


class FakeProvider:
    """Scripted analysis provider recording every request it gets."""

    def __init__(
        self,
        text: Optional[str] = None,
        fragments: Optional[list[str]] = None,
        error: Optional[Exception] = None,
        fail_after: Optional[int] = None,
    ):
        self.text = text if text is not None else sample_json()
        self.fragments = fragments if fragments is not None else split_fragments(self.text)
        self.error = error
        self.fail_after = fail_after
        self.requests: list[AnalysisRequest] = []
        self.chats: list[tuple] = []
        self.closed_streams = 0

    async def generate(self, request: AnalysisRequest) -> str:
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.text

    async def generate_stream(self, request: AnalysisRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        try:
            if self.error and self.fail_after is None:
                raise self.error
            for i, fragment in enumerate(self.fragments):
                if self.error and i == self.fail_after:
                    raise self.error
                yield fragment
        finally:
            self.closed_streams += 1

    async def chat(self, message, tweet_context=None, tier=ModelTier.PREMIUM) -> str:
        self.chats.append((message, tweet_context, tier))
        return f"Try a question at the end. ({message})"


class FixedClock:
    """Clock pinned to a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def ledger(database, clock):
    return UsageLedger(database, clock=clock)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings():
    return Settings(_env_file=None, database_url="sqlite://", openrouter_api_key=None)


@pytest.fixture
def app(settings, database, provider, clock):
    return create_app(settings=settings, database=database, provider=provider, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def signed_in_user(database):
    """A user with a live session; returns (user_id, token)."""
    user_id = "user-123"
    token = "session-token-abc"
    with database.connect() as conn:
        conn.execute(
            users.insert().values(
                id=user_id,
                name="Ada",
                image=None,
                bio="Indie hacker building in public",
                target_audience="early-stage founders",
                ai_context=None,
            )
        )
        conn.execute(
            sessions.insert().values(
                id="sess-1",
                token=token,
                user_id=user_id,
                expires_at=datetime(2099, 1, 1, tzinfo=timezone.utc),
            )
        )
    return user_id, token


@pytest.fixture
def log_messages():
    """Capture loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
