"""Redirect endpoint for short links."""

import structlog
from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from linkpulse.core.deps import ComponentsDep
from linkpulse.core.observability import record_redirect, record_visit_skipped
from linkpulse.schemas.events import VisitEvent
from linkpulse.services.classifier import is_bot

logger = structlog.get_logger()

router = APIRouter(tags=["redirect"])

# Edge headers carrying the visitor's country, in order of preference
COUNTRY_HEADERS = ("CF-IPCountry", "X-Country")


def get_client_ip(request: Request) -> str | None:
    """Extract client IP address from request.

    Handles X-Forwarded-For header for requests behind proxies/load balancers.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs: client, proxy1, proxy2
        # The first one is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return None


def get_country_header(request: Request) -> str | None:
    for header in COUNTRY_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


@router.get("/{address}")
async def redirect_to_target(
    request: Request,
    address: str,
    components: ComponentsDep,
) -> RedirectResponse:
    """Redirect a short address to its target URL.

    The visit is handed to the ingestion queue without waiting; nothing that
    happens to it can fail the redirect.
    """
    link = await components.registry.find_by_address(address)

    if not link:
        logger.info("Redirect failed - link not found", address=address)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Link not found",
        )

    user_agent = request.headers.get("User-Agent")
    if is_bot(user_agent):
        record_visit_skipped("bot")
        logger.debug("Visit from bot not recorded", address=address, user_agent=user_agent)
    else:
        components.queue.submit(
            VisitEvent(
                link_id=link.id,
                user_id=link.user_id,
                user_agent=user_agent,
                ip_address=get_client_ip(request),
                country_code=get_country_header(request),
                referrer=request.headers.get("Referer"),
            )
        )

    logger.info("Redirect", address=address, link_id=str(link.id))
    record_redirect(status.HTTP_302_FOUND)

    return RedirectResponse(
        url=link.target,
        status_code=status.HTTP_302_FOUND,
    )
