# deps.py
# Dependency injections for routes: backend handle, per-request portal client,
# authentication and admin validation.

import logging
from typing import Annotated, AsyncGenerator, Optional

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from .backend import Backend
from .errors import (AdminAccessRequiredError, InputValidationError, InvalidTransitionError,
                     NotAuthenticatedError, NotFoundError, OperationResult, PortalError)
from .portal import PortalContext

log = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


# -----------------------
#  BACKEND DEPENDENCY
# -----------------------
def get_backend(request: Request) -> Backend:
    return request.app.state.backend

BackendDep = Annotated[Backend, Depends(get_backend)]


# ------------------------------------------------
#  TOKEN HANDLING (COOKIE + BEARER SUPPORT)
# ------------------------------------------------
def get_token(
    cookie_token: Annotated[Optional[str], Cookie(alias="access_token")] = None,
    bearer_token: Annotated[Optional[str], Depends(oauth2_scheme)] = None,
) -> Optional[str]:
    # Token priority: Bearer > Cookie
    return bearer_token or cookie_token

TokenDep = Annotated[Optional[str], Depends(get_token)]


def request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


# ------------------------------------------------
#  PORTAL CLIENT PER REQUEST
# ------------------------------------------------
async def get_portal(request: Request, backend: BackendDep, token: TokenDep) -> AsyncGenerator[PortalContext, None]:
    """
    A portal client for this request, signed in with the caller's token when
    one is present. Realtime sync is left off; requests are one-shot.
    """
    portal = PortalContext(backend, origin=request_origin(request), auto_sync=False)
    await portal.start()
    try:
        if token:
            result = await portal.session.restore_session(token)
            if not result.ok:
                log.warning(f"Token rejected: {result.error.message}")
        yield portal
    finally:
        await portal.close()

PortalDep = Annotated[PortalContext, Depends(get_portal)]


async def get_current_portal(portal: PortalDep) -> PortalContext:
    if not portal.session.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return portal

CurrentPortalDep = Annotated[PortalContext, Depends(get_current_portal)]


async def get_current_admin_portal(portal: CurrentPortalDep) -> PortalContext:
    if not portal.session.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return portal

CurrentAdminPortalDep = Annotated[PortalContext, Depends(get_current_admin_portal)]


# ------------------------------------------------
#  RESULT -> HTTP
# ------------------------------------------------
def status_for_error(error: PortalError) -> int:
    if isinstance(error, NotAuthenticatedError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(error, AdminAccessRequiredError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, InputValidationError):
        return 422  # unprocessable content
    if isinstance(error, InvalidTransitionError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


def unwrap(result: OperationResult):
    """Return the result data or raise the matching HTTPException."""
    if result.error is not None:
        raise HTTPException(status_code=status_for_error(result.error), detail=result.error.message)
    return result.data
