"""History endpoints for signed-in users."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from loguru import logger

from postlab.api.database import Database
from postlab.api.dependencies import get_database, require_session
from postlab.api.history import (
    clear_history as clear_history_entries,
    get_history as get_history_entries,
    get_history_entry,
)
from postlab.api.schemas import ClearResponse, HistoryEntryResponse, HistoryResponse
from postlab.models.schemas import Session

router = APIRouter(prefix="/history", tags=["history"])


@router.get("", response_model=HistoryResponse)
async def get_history(
    limit: Optional[int] = Query(None, ge=1),
    session: Session = Depends(require_session),
    database: Database = Depends(get_database),
):
    """Get the caller's saved analyses."""
    try:
        entries = await run_in_threadpool(
            get_history_entries, database, session.user.id, limit
        )
        return HistoryResponse(entries=entries)
    except Exception:
        logger.exception("Error getting history")
        raise HTTPException(status_code=500, detail="Error getting history")


@router.get("/{entry_id}", response_model=HistoryEntryResponse)
async def get_history_entry_by_id(
    entry_id: int,
    session: Session = Depends(require_session),
    database: Database = Depends(get_database),
):
    """Get a specific history entry."""
    try:
        entry = await run_in_threadpool(get_history_entry, database, session.user.id, entry_id)
    except Exception:
        logger.exception("Error getting history entry")
        raise HTTPException(status_code=500, detail="Error getting history entry")

    if not entry:
        raise HTTPException(status_code=404, detail=f"History entry {entry_id} not found")
    return HistoryEntryResponse(entry=entry)


@router.delete("", response_model=ClearResponse)
async def clear_history(
    session: Session = Depends(require_session),
    database: Database = Depends(get_database),
):
    """Clear the caller's history."""
    try:
        removed = await run_in_threadpool(clear_history_entries, database, session.user.id)
        return ClearResponse(success=True, message=f"History cleared ({removed} entries)")
    except Exception:
        logger.exception("Error clearing history")
        raise HTTPException(status_code=500, detail="Error clearing history")
