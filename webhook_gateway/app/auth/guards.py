"""
Route guards.

FastAPI dependencies that admit a request only when its session carries a
signed-in (and, where required, authorized) user. API-style callers get
JSON errors; browsers are redirected to login or shown an access-denied
page. The HTTP mapping of the raised errors lives in ``main``.
"""

import logging

from fastapi import Depends, Request

from ..errors import AccessDenied, NotAuthenticated
from ..models import SessionUser
from ..session import Session

logger = logging.getLogger("webhook_gateway.auth.guards")

USER_SESSION_KEY = "user"


def is_api_request(request: Request) -> bool:
    """True for XHR/fetch callers that expect JSON rather than a page."""
    accept = request.headers.get("accept", "")
    requested_with = request.headers.get("x-requested-with", "")
    return "application/json" in accept or requested_with.lower() == "xmlhttprequest"


def get_session(request: Request) -> Session:
    """The request session, or StoreUnavailable if the store could not be read."""
    session: Session = request.session
    session.ensure_available()
    return session


def _requested_target(request: Request) -> str:
    target = request.url.path
    if request.url.query:
        target += f"?{request.url.query}"
    return target


def _authenticated_user(request: Request, api: bool) -> SessionUser:
    session = get_session(request)
    raw_user = session.get(USER_SESSION_KEY)
    if not raw_user:
        raise NotAuthenticated(api=api, return_to=_requested_target(request))
    return SessionUser.model_validate(raw_user)


def _ensure_authorized(user: SessionUser, api: bool) -> SessionUser:
    if user.authorized is not True:
        logger.info("Access denied: not in allowed group", extra={"email": user.email})
        raise AccessDenied(api=api)
    return user


async def require_authenticated(request: Request) -> SessionUser:
    return _authenticated_user(request, api=is_api_request(request))


async def require_authorized(
    request: Request,
    user: SessionUser = Depends(require_authenticated),
) -> SessionUser:
    return _ensure_authorized(user, api=is_api_request(request))


async def require_api_user(request: Request) -> SessionUser:
    """Authenticated and authorized, always answered as an API caller."""
    user = _authenticated_user(request, api=True)
    return _ensure_authorized(user, api=True)
