"""Link Pydantic schemas."""

import re
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from linkpulse.schemas.stats import StatsReport


class LinkCreate(BaseModel):
    """Schema for creating a new link."""

    target: HttpUrl = Field(description="The URL to shorten")
    description: str | None = Field(default=None, max_length=255)
    custom_address: str | None = Field(
        default=None,
        min_length=3,
        max_length=64,
        description="Optional custom short address",
    )

    @field_validator("custom_address")
    @classmethod
    def validate_custom_address(cls, v: str | None) -> str | None:
        """Validate custom address format."""
        if v is None:
            return v
        # Only allow alphanumeric characters, hyphens and underscores
        if not re.match(r"^[a-zA-Z0-9_-]+$", v):
            raise ValueError(
                "Custom address can only contain letters, numbers, hyphens and underscores"
            )
        if v.startswith("-") or v.endswith("-"):
            raise ValueError("Custom address cannot start or end with a hyphen")
        return v


class LinkResponse(BaseModel):
    """Schema for link response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    address: str
    target: str
    description: str | None
    visit_count: int
    created_at: datetime
    updated_at: datetime


class LinkListResponse(BaseModel):
    """Schema for paginated link list response."""

    items: list[LinkResponse]
    total: int
    page: int
    page_size: int
    pages: int


class LinkStatsResponse(StatsReport):
    """Stats report together with the link it describes."""

    link: LinkResponse
