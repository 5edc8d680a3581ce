"""Dependency injection for FastAPI routes."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, Request

from postlab.api.config import Settings
from postlab.api.database import Database
from postlab.api.identity import SessionProvider, extract_session_token
from postlab.api.services import AnalysisService
from postlab.api.usage import UsageLedger
from postlab.models.schemas import Session


@lru_cache()
def get_settings() -> Settings:
    """Get application settings (cached singleton)."""
    return Settings()


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was created with."""
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_analysis_service(request: Request) -> AnalysisService:
    return request.app.state.analysis_service


def get_ledger(service: AnalysisService = Depends(get_analysis_service)) -> UsageLedger:
    return service.ledger


def get_session(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    database: Database = Depends(get_database),
) -> Optional[Session]:
    """Current session for this request, if the caller is signed in."""
    token = extract_session_token(
        request.headers.get("authorization"),
        request.cookies,
        settings.session_cookie_name,
    )
    return SessionProvider(database).get_session(token)


def require_session(session: Optional[Session] = Depends(get_session)) -> Session:
    """Like get_session, but rejects anonymous callers with 401."""
    if session is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return session
