"""Link CRUD and stats endpoints."""

import math
from typing import Annotated
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from linkpulse.core.deps import ComponentsDep, CurrentUser
from linkpulse.core.exceptions import AddressTakenError, StatsUnavailableError
from linkpulse.core.observability import record_link_operation
from linkpulse.models.link import Link
from linkpulse.models.user import User
from linkpulse.schemas.link import (
    LinkCreate,
    LinkListResponse,
    LinkResponse,
    LinkStatsResponse,
)
from linkpulse.services.link_registry import LinkRegistry

logger = structlog.get_logger()

router = APIRouter(prefix="/links", tags=["links"])

STATS_UNAVAILABLE = "Could not get the short link stats. Try again later."


async def _get_owned_link(
    registry: LinkRegistry,
    link_id: UUID,
    user: User,
    allow_admin: bool = False,
) -> Link:
    owner_id = None if allow_admin and user.is_admin else user.id
    link = await registry.get(link_id, user_id=owner_id)
    if not link:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Link not found",
        )
    return link


@router.post("", response_model=LinkResponse, status_code=status.HTTP_201_CREATED)
async def create_link(
    link_data: LinkCreate,
    user: CurrentUser,
    components: ComponentsDep,
) -> LinkResponse:
    """Create a new short link.

    If `custom_address` is provided it is used as the address,
    otherwise a random one is generated.
    """
    try:
        link = await components.registry.create(
            user_id=user.id,
            target=str(link_data.target),
            address=link_data.custom_address,
            description=link_data.description,
        )
    except AddressTakenError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e

    record_link_operation("create")
    return LinkResponse.model_validate(link)


@router.get("", response_model=LinkListResponse)
async def list_links(
    user: CurrentUser,
    components: ComponentsDep,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> LinkListResponse:
    """List all links for the current user (paginated)."""
    links, total = await components.registry.list_for_user(
        user_id=user.id,
        page=page,
        page_size=page_size,
    )

    return LinkListResponse(
        items=[LinkResponse.model_validate(link) for link in links],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total > 0 else 0,
    )


@router.get("/{link_id}", response_model=LinkResponse)
async def get_link(
    link_id: UUID,
    user: CurrentUser,
    components: ComponentsDep,
) -> LinkResponse:
    """Get a specific link by ID."""
    link = await _get_owned_link(components.registry, link_id, user)
    return LinkResponse.model_validate(link)


@router.delete("/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_link(
    link_id: UUID,
    user: CurrentUser,
    components: ComponentsDep,
) -> None:
    """Delete a link and its visit statistics."""
    link = await _get_owned_link(components.registry, link_id, user)
    await components.registry.delete(link)
    record_link_operation("delete")


@router.get("/{link_id}/stats", response_model=LinkStatsResponse)
async def get_link_stats(
    link_id: UUID,
    user: CurrentUser,
    components: ComponentsDep,
) -> LinkStatsResponse:
    """Visit statistics for the last day, week, month and year.

    Owners can read their own links; admins can read any link. Reports
    may lag recent visits by up to the stats cache TTL.
    """
    link = await _get_owned_link(components.registry, link_id, user, allow_admin=True)

    try:
        report = await components.rollup.compute(link.id, link.visit_count)
    except StatsUnavailableError as e:
        logger.warning("Stats unavailable", link_id=str(link_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=STATS_UNAVAILABLE,
        ) from e

    return LinkStatsResponse(
        **report.model_dump(),
        link=LinkResponse.model_validate(link),
    )
