"""Visit event passed from the redirect handler to the aggregator."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from linkpulse.core.timeutil import to_naive_utc, utcnow


class VisitEvent(BaseModel):
    """One qualifying visit to a short link.

    Serialized onto the ingestion queue as JSON; never persisted directly.
    """

    link_id: UUID = Field(description="UUID of the visited link")
    user_id: UUID | None = Field(default=None, description="Owner of the link, if known")
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the visit occurred (UTC)",
    )
    user_agent: str | None = Field(default=None, description="HTTP User-Agent header")
    ip_address: str | None = Field(default=None, description="Client IP address")
    country_code: str | None = Field(
        default=None,
        description="Country code supplied by an edge header, if any",
    )
    referrer: str | None = Field(default=None, description="HTTP Referer header")

    model_config = {"json_schema_extra": {"example": {
        "link_id": "550e8400-e29b-41d4-a716-446655440000",
        "user_id": "9b2f4a1e-3c1d-4f7a-8a55-0c6f1b1d2e3f",
        "timestamp": "2024-01-15T10:30:00",
        "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        "ip_address": "203.0.113.7",
        "country_code": "US",
        "referrer": "https://www.google.com/",
    }}}

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)
