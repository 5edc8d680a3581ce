"""Events emitted by a streaming analysis run."""

import json
from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel

from postlab.models.schemas import AnalysisResult, ParseFailure, iso_utc

DONE_FRAME = "data: [DONE]\n\n"


class StreamEvent(BaseModel):
    """Base class for events; subclasses define their wire payload."""

    kind: str

    def payload(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_sse(self) -> str:
        """Format as a server-sent event frame."""
        return f"data: {json.dumps(self.payload())}\n\n"


class TierInfoEvent(StreamEvent):
    kind: Literal["tier_info"] = "tier_info"
    is_premium_tier: bool
    premium_remaining: int

    def payload(self) -> dict[str, Any]:
        return {
            "_tierInfo": {
                "isPremiumTier": self.is_premium_tier,
                "premiumRemaining": self.premium_remaining,
            }
        }


class PartialEvent(StreamEvent):
    """Accumulated provider text so far, not a single fragment."""

    kind: Literal["partial"] = "partial"
    accumulated_text: str

    def payload(self) -> dict[str, Any]:
        return {"partial": self.accumulated_text}


class CompleteEvent(StreamEvent):
    kind: Literal["complete"] = "complete"
    result: Union[AnalysisResult, ParseFailure]

    @property
    def succeeded(self) -> bool:
        return isinstance(self.result, AnalysisResult)

    def payload(self) -> dict[str, Any]:
        return {"complete": True, "analysis": self.result.model_dump(mode="json")}


class UsageUpdateEvent(StreamEvent):
    kind: Literal["usage_update"] = "usage_update"
    remaining: int
    reset_at: datetime

    def payload(self) -> dict[str, Any]:
        return {"_usage": {"remaining": self.remaining, "resetAt": iso_utc(self.reset_at)}}


class DoneEvent(StreamEvent):
    kind: Literal["done"] = "done"

    def payload(self) -> dict[str, Any]:
        return {}

    def to_sse(self) -> str:
        return DONE_FRAME


class ErrorEvent(StreamEvent):
    """Terminal signal for a run that produced no analysis."""

    kind: Literal["error"] = "error"
    message: str

    def payload(self) -> dict[str, Any]:
        return {"error": self.message}
