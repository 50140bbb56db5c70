from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

MAX_SUMMARY_POINTS = 5
MIN_KEY_POINTS = 3
MAX_KEY_POINTS = 5
MIN_CONTRIBUTORS = 2
MAX_CONTRIBUTORS = 4

# Sentinel score for threads without any posts
EMPTY_THREAD_HEALTH_SCORE = 0


class Sentiment(str, Enum):
    POSITIVE = "Positive"
    NEUTRAL = "Neutral"
    MIXED = "Mixed"
    NEGATIVE = "Negative"
    NO_DISCUSSION = "No Discussion"


class HealthLabel(str, Enum):
    HEALTHY = "Healthy"
    NEEDS_ATTENTION = "Needs Attention"
    HEATED_DISCUSSION = "Heated Discussion"
    NEW_THREAD = "New Thread"


class ErrorCategory(str, Enum):
    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    AUTHENTICATION = "AUTHENTICATION"
    NOT_FOUND = "NOT_FOUND"
    AI_PROCESSING = "AI_PROCESSING"
    VALIDATION = "VALIDATION"
    API = "API"
    UNKNOWN = "UNKNOWN"


def health_label_for(score: int) -> HealthLabel:
    """Map a 0-10 health score onto its label. 0 is reserved for empty threads."""
    if score == EMPTY_THREAD_HEALTH_SCORE:
        return HealthLabel.NEW_THREAD
    if score >= 7:
        return HealthLabel.HEALTHY
    if score >= 4:
        return HealthLabel.NEEDS_ATTENTION
    return HealthLabel.HEATED_DISCUSSION


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Contributor(_CamelModel):
    username: str
    contribution: str


class SummaryData(_CamelModel):
    summary: List[str] = Field(default_factory=list, max_length=MAX_SUMMARY_POINTS)
    key_points: List[str] = Field(default_factory=list, max_length=MAX_KEY_POINTS)
    contributors: List[Contributor] = Field(default_factory=list, max_length=MAX_CONTRIBUTORS)
    sentiment: Sentiment
    health_score: int = Field(ge=0, le=10)

    @computed_field(alias="healthLabel")
    @property
    def health_label(self) -> HealthLabel:
        return health_label_for(self.health_score)


class UserFriendlyError(_CamelModel):
    category: ErrorCategory
    title: str
    message: str
    actionable: bool
    retryable: bool
    retry_after: Optional[int] = None
    suggestions: List[str] = Field(default_factory=list)
    technical_details: Optional[str] = None

    def to_public(self) -> "UserFriendlyError":
        """Copy without diagnostic detail, safe to hand to clients."""
        return self.model_copy(update={"technical_details": None})


class SummaryResult(_CamelModel):
    success: bool
    data: Optional[SummaryData] = None
    error: Optional[UserFriendlyError] = None
    fallback: bool = False
    cached: bool = False
    generated_at: Optional[str] = None
    attempts: int = 0


class SummarizeRequest(_CamelModel):
    # Format is checked by the endpoint so a bad id gets a 400 with a classified error
    thread_id: str = ""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class SummarizeResponse(_CamelModel):
    success: bool
    data: Optional[SummaryData] = None
    error: Optional[UserFriendlyError] = None
    fallback: bool = False
    cached: bool = False
    generated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
