"""Request and response schemas for the web API."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from postlab.models.schemas import ImageData


class SimulateRequest(BaseModel):
    """Request body shared by the simulate endpoints.

    `tweet` is left untyped so a missing or non-string post is reported with
    the endpoint's own 400 message.
    """

    model_config = ConfigDict(populate_by_name=True)

    tweet: Any = None
    image_base64: Optional[str] = Field(None, alias="imageBase64")
    image_mime_type: Optional[str] = Field(None, alias="imageMimeType")
    anonymous_id: Optional[str] = Field(None, alias="anonymousId")

    def image(self) -> Optional[ImageData]:
        if self.image_base64 and self.image_mime_type:
            return ImageData(base64=self.image_base64, mime_type=self.image_mime_type)
        return None


class QuotaExceededResponse(BaseModel):
    """Response schema for a rejected request."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    remaining: int = 0
    reset_at: str = Field(alias="resetAt")


class ErrorResponse(BaseModel):
    error: str


class UsageResponse(BaseModel):
    """Response schema for usage endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    used: int
    remaining: int
    limit: int
    reset_at: str = Field(alias="resetAt")
    is_premium_tier: bool = Field(alias="isPremiumTier")
    premium_remaining: int = Field(alias="premiumRemaining")


class StatsResponse(BaseModel):
    """Response schema for global stats endpoint."""

    total_simulations: int


class ChatRequest(BaseModel):
    """Request schema for chat endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(min_length=1)
    tweet_context: Optional[str] = Field(None, alias="tweetContext")


class ChatResponse(BaseModel):
    """Response schema for chat endpoint."""

    response: str


class HistoryResponse(BaseModel):
    """Response schema for history endpoint."""

    entries: list[dict[str, Any]]


class HistoryEntryResponse(BaseModel):
    """Response schema for single history entry."""

    entry: dict[str, Any]


class ClearResponse(BaseModel):
    """Response schema for delete endpoints."""

    success: bool
    message: str
