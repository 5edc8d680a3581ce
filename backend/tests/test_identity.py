"""Tests for identity resolution and session lookup."""
from datetime import datetime, timezone

from postlab.api.database import Database, sessions
from postlab.api.identity import SessionProvider, extract_session_token, resolve_identity
from postlab.models.schemas import IdentityKind


def test_user_id_takes_precedence():
    identity = resolve_identity("user-1", "anon_1")

    assert identity.kind is IdentityKind.USER
    assert identity.value == "user-1"
    assert identity.is_authenticated


def test_anonymous_id_used_when_signed_out():
    identity = resolve_identity(None, "anon_1")

    assert identity.kind is IdentityKind.ANONYMOUS
    assert not identity.is_authenticated


def test_no_identifier_emits_diagnostic(log_messages):
    assert resolve_identity(None, None) is None
    assert resolve_identity("  ", "") is None
    assert any("No user ID or anonymous ID" in m for m in log_messages)


def test_session_lookup(database, signed_in_user):
    user_id, token = signed_in_user
    provider = SessionProvider(database)

    session = provider.get_session(token)

    assert session.user.id == user_id
    assert session.user.name == "Ada"
    assert provider.get_session("unknown") is None
    assert provider.get_session(None) is None


def test_expired_session_is_ignored(database, signed_in_user):
    user_id, _ = signed_in_user
    with database.connect() as conn:
        conn.execute(
            sessions.insert().values(
                id="sess-old",
                token="old-token",
                user_id=user_id,
                expires_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
            )
        )

    assert SessionProvider(database).get_session("old-token") is None


def test_user_context(database, signed_in_user):
    user_id, _ = signed_in_user

    context = SessionProvider(database).get_user_context(user_id)

    assert context.target_audience == "early-stage founders"
    assert context.bio == "Indie hacker building in public"
    assert context.ai_context is None
    assert SessionProvider(database).get_user_context("nobody") is None


def test_session_lookup_failure_downgrades_to_anonymous():
    broken = Database("sqlite://")
    assert SessionProvider(broken).get_session("token") is None


def test_extract_session_token():
    cookie = "postlab.session_token"

    assert extract_session_token("Bearer abc", {}, cookie) == "abc"
    assert extract_session_token(None, {cookie: "xyz"}, cookie) == "xyz"
    assert extract_session_token("Basic abc", {cookie: "xyz"}, cookie) == "xyz"
    assert extract_session_token(None, {}, cookie) is None
