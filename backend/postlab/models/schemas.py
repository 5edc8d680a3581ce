"""Data models and schemas for PostLab."""

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt

# Predictions are plain finite JSON numbers; bools, numeric strings, NaN and
# Infinity are rejected (see AnalysisResult.model_config)
Number = Union[StrictInt, StrictFloat]


def iso_utc(value: datetime) -> str:
    """Format an aware UTC datetime the way browsers do (``...Z``)."""
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ModelTier(str, Enum):
    """Model quality level serving a request."""

    PREMIUM = "premium"
    LITE = "lite"


class EngagementOutlook(str, Enum):
    """Qualitative engagement outlook."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class IdentityKind(str, Enum):
    """Where a quota identifier came from."""

    USER = "user"
    ANONYMOUS = "anonymous"


class Identity(BaseModel):
    """Identifier used to bucket usage.

    An anonymous identity is client-generated and only ever used for quota
    bucketing; it never authorizes access to stored data.
    """

    model_config = ConfigDict(frozen=True)

    kind: IdentityKind
    value: str

    @property
    def is_authenticated(self) -> bool:
        return self.kind is IdentityKind.USER


class ImageData(BaseModel):
    """Inline image attached to a post."""

    model_config = ConfigDict(frozen=True)

    base64: str
    mime_type: str

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class UserContext(BaseModel):
    """Optional profile details of the signed-in author."""

    model_config = ConfigDict(frozen=True)

    bio: Optional[str] = None
    target_audience: Optional[str] = None
    ai_context: Optional[str] = None


class AnalysisRequest(BaseModel):
    """Everything the analysis provider needs for one post."""

    model_config = ConfigDict(frozen=True)

    text: str
    image: Optional[ImageData] = None
    user_context: Optional[UserContext] = None
    model_tier: ModelTier = ModelTier.PREMIUM


class Variant(BaseModel):
    """A rewritten version of the post."""

    model_config = ConfigDict(strict=True)

    version: str
    tweet: str
    reason: str
    audience_reactions: list[str]


class AnalysisResult(BaseModel):
    """Validated engagement analysis returned by the provider."""

    model_config = ConfigDict(strict=True, allow_inf_nan=False)

    tweet: str
    predicted_likes: Number
    predicted_retweets: Number
    predicted_replies: Number
    predicted_quotes: Number
    predicted_views: Number
    engagement_outlook: EngagementOutlook
    engagement_justification: str
    analysis: list[str]
    suggestions: list[Variant]


class ParseFailure(BaseModel):
    """Provider output that does not conform to the analysis schema."""

    error: str = "Parse failed"
    raw_text: str = Field(default="", exclude=True)
    details: Optional[str] = Field(default=None, exclude=True)


class UsageDecision(BaseModel):
    """Derived quota decision for one identity at one point in time."""

    allowed: bool
    remaining: int
    reset_at: datetime
    is_premium_tier: bool
    premium_remaining: int

    def usage_payload(self) -> dict:
        return {"remaining": self.remaining, "resetAt": iso_utc(self.reset_at)}

    def tier_payload(self) -> dict:
        return {
            "isPremiumTier": self.is_premium_tier,
            "premiumRemaining": self.premium_remaining,
        }


class SessionUser(BaseModel):
    """User attached to an authenticated session."""

    id: str
    name: Optional[str] = None
    image: Optional[str] = None


class Session(BaseModel):
    """Authenticated session as seen by the API."""

    user: SessionUser
    expires_at: Optional[datetime] = None
