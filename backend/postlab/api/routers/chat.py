"""Chat endpoint - quick help improving a post."""

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from postlab.api.dependencies import get_analysis_service
from postlab.api.schemas import ChatRequest, ChatResponse
from postlab.api.services import AnalysisService

router = APIRouter(tags=["chat"])


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    service: AnalysisService = Depends(get_analysis_service),
):
    """Ask the assistant about a post. Does not count against the daily quota."""
    try:
        reply = await service.chat(request.message, request.tweet_context)
        return ChatResponse(response=reply)
    except Exception:
        logger.exception("Chat error")
        raise HTTPException(status_code=500, detail="Failed to get a response. Please try again.")
