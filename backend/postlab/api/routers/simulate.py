"""Simulation endpoints - engagement analysis for a draft post."""

from typing import AsyncGenerator, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask

from postlab.api.dependencies import get_analysis_service, get_session
from postlab.api.exceptions import QuotaExceededError, RequestValidationFailed
from postlab.api.schemas import SimulateRequest
from postlab.api.services import (
    GENERIC_FAILURE,
    AnalysisRun,
    AnalysisService,
    validate_post,
)
from postlab.models.schemas import Session

router = APIRouter(tags=["simulate"])


@router.post("/simulate")
async def simulate(
    request: SimulateRequest,
    background_tasks: BackgroundTasks,
    session: Optional[Session] = Depends(get_session),
    service: AnalysisService = Depends(get_analysis_service),
):
    """Analyze a post and return the full result in one response."""
    try:
        tweet = validate_post(request.tweet)
        run = await service.prepare(
            tweet,
            session=session,
            anonymous_id=request.anonymous_id,
            image=request.image(),
        )
        payload = await service.simulate(run)
    except (RequestValidationFailed, QuotaExceededError):
        raise
    except Exception:
        logger.exception("Simulation error")
        raise HTTPException(status_code=500, detail=GENERIC_FAILURE)

    # History and stats run after the response is sent and never fail it
    background_tasks.add_task(service.record_side_effects, run)
    return payload


@router.post("/simulate-stream")
async def simulate_stream(
    request: SimulateRequest,
    session: Optional[Session] = Depends(get_session),
    service: AnalysisService = Depends(get_analysis_service),
):
    """Analyze a post, streaming partial output as server-sent events."""
    try:
        tweet = validate_post(request.tweet, max_length=None)
        run = await service.prepare(
            tweet,
            session=session,
            anonymous_id=request.anonymous_id,
            image=request.image(),
        )
    except (RequestValidationFailed, QuotaExceededError):
        raise
    except Exception:
        logger.exception("Simulation error")
        raise HTTPException(status_code=500, detail=GENERIC_FAILURE)

    return StreamingResponse(
        _sse_frames(service, run),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(service.record_side_effects, run),
    )


async def _sse_frames(service: AnalysisService, run: AnalysisRun) -> AsyncGenerator[str, None]:
    """Format analysis events as SSE frames."""
    async for event in service.stream(run):
        yield event.to_sse()
