"""Dependency injection utilities for FastAPI routes."""

from typing import Annotated

from fastapi import Cookie, Depends, Header, HTTPException, Request, status

from linkpulse.core.lifecycle import Components
from linkpulse.core.security import decode_access_token
from linkpulse.models.user import User

# Cookie name for auth token
AUTH_COOKIE_NAME = "linkpulse_token"


def get_components(request: Request) -> Components:
    """Components built by the application lifespan."""
    return request.app.state.components


ComponentsDep = Annotated[Components, Depends(get_components)]


async def get_token(
    authorization: Annotated[str | None, Header()] = None,
    linkpulse_token: Annotated[str | None, Cookie()] = None,
) -> str | None:
    """Extract the auth token from a Bearer header or the httpOnly cookie."""
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            return credentials.strip()
    return linkpulse_token


async def get_current_user(
    components: ComponentsDep,
    token: Annotated[str | None, Depends(get_token)],
) -> User:
    """Get current authenticated user.

    Raises HTTPException 401 if not authenticated.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if token is None:
        raise credentials_exception

    token_data = decode_access_token(components.settings, token)
    if token_data is None:
        raise credentials_exception

    user = await components.registry.get_user(token_data.user_id)
    if user is None:
        raise credentials_exception

    return user


# Type aliases for dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
