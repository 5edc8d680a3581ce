"""Usage and global stats endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from loguru import logger

from postlab.api.database import Database
from postlab.api.dependencies import get_database, get_ledger, get_session
from postlab.api.history import get_stat
from postlab.api.identity import resolve_identity
from postlab.api.schemas import StatsResponse, UsageResponse
from postlab.api.usage import UsageLedger
from postlab.models.schemas import Session

router = APIRouter(tags=["usage"])


@router.get("/usage", response_model=UsageResponse)
async def usage(
    anonymous_id: Optional[str] = Query(None, alias="anonymousId"),
    session: Optional[Session] = Depends(get_session),
    ledger: UsageLedger = Depends(get_ledger),
):
    """Get today's usage for the caller."""
    identity = resolve_identity(session.user.id if session else None, anonymous_id)
    stats = await run_in_threadpool(ledger.stats, identity)
    return UsageResponse(**stats)


@router.get("/stats", response_model=StatsResponse)
async def stats(database: Database = Depends(get_database)):
    """Get global simulation stats."""
    try:
        total = await run_in_threadpool(get_stat, database)
        return StatsResponse(total_simulations=total)
    except Exception:
        logger.exception("Error getting stats")
        raise HTTPException(status_code=500, detail="Failed to load stats")
