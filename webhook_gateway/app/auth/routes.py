"""
Authentication Routes Module

This module implements the OIDC Authorization Code flow with PKCE against
Microsoft Entra ID:
- /auth/login: Start a login transaction and redirect to Entra ID
- /auth/callback: Validate the callback, check group membership, store the user
- /auth/logout: Destroy the session and redirect to the provider end-session endpoint
- /auth/status: Report the signed-in user to the frontend

Failures inside the flow raise GatewayError subclasses; the exception handlers
in ``main`` render them as error pages.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import RedirectResponse

from ..config import Settings
from ..errors import ConfigMissing, ProviderUnreachable, StoreUnavailable
from ..models import AuthStatus, SessionUser, StatusUser
from .authorization import evaluate_group_membership
from .guards import USER_SESSION_KEY, get_session
from .transaction import OIDCTransactionManager
from .utils import extract_email_from_claims, get_user_display_name, validate_return_to

logger = logging.getLogger("webhook_gateway.auth")

auth_router = APIRouter()


def get_transaction_manager(request: Request) -> OIDCTransactionManager:
    return request.app.state.oidc


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    request: Request,
    return_to: Optional[str] = Query(None, alias="returnTo"),
):
    """
    Initiate OIDC login flow by redirecting to Microsoft Entra ID.

    The pending transaction (state, nonce, PKCE verifier, return target) is
    saved to the session before the redirect is sent.

    Query Parameters:
        returnTo: Where to go after login (default DEFAULT_RETURN_PATH)

    Returns:
        RedirectResponse to the Entra authorization endpoint
    """
    settings = get_app_settings(request)
    session = get_session(request)

    authorization_url = await get_transaction_manager(request).begin_login(
        session, return_to or settings.DEFAULT_RETURN_PATH
    )
    await session.save()

    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback", response_class=RedirectResponse)
async def callback(request: Request):
    """
    Handle the redirect back from Microsoft Entra ID.

    On success the session is regenerated (new id, fixation protection), the
    user record is written and saved, and the browser is sent to the
    validated return target.
    """
    settings = get_app_settings(request)
    session = get_session(request)

    try:
        result = await get_transaction_manager(request).complete_login(session, request.query_params)
    except Exception:
        # complete_login has already popped the transaction; persist that
        # before the error handlers answer
        await session.save()
        raise

    authorized = evaluate_group_membership(result.claims, result.tokens, settings.ENTRA_ALLOWED_GROUP_ID)

    user = SessionUser(
        sub=result.claims.get("sub"),
        email=extract_email_from_claims(result.claims),
        name=get_user_display_name(result.claims),
        authorized=authorized,
        id_token=result.tokens.get("id_token"),
    )

    await session.regenerate()
    session[USER_SESSION_KEY] = user.model_dump()
    await session.save()

    logger.info(
        "User signed in",
        extra={"sub": user.sub, "email": user.email, "authorized": authorized},
    )

    safe_return_to = validate_return_to(result.return_to, settings.BASE_URL)
    return RedirectResponse(url=safe_return_to, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Logout Endpoint
# =============================================================================

@auth_router.get("/logout", response_class=RedirectResponse)
async def logout(request: Request):
    """
    Destroy the local session and redirect to the Entra end-session endpoint.

    Falls back to redirecting to ``/`` when the provider cannot be reached.
    """
    settings = get_app_settings(request)
    session = request.session
    id_token = None

    store_failed = False
    try:
        session.ensure_available()
        id_token = (session.get(USER_SESSION_KEY) or {}).get("id_token")
        await session.destroy()
    except StoreUnavailable:
        logger.error("Session destruction failed")
        store_failed = True

    try:
        logout_url = await get_transaction_manager(request).build_logout_url(id_token)
    except (ProviderUnreachable, ConfigMissing) as e:
        logger.error(f"Logout URL error: {e.message}")
        logout_url = "/"

    response = RedirectResponse(url=logout_url, status_code=status.HTTP_302_FOUND)
    if store_failed:
        response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
    return response


# =============================================================================
# Status Endpoint
# =============================================================================

@auth_router.get("/status", response_model=AuthStatus, response_model_exclude_unset=True)
async def auth_status(request: Request):
    """Session status for the frontend."""
    session = get_session(request)
    raw_user = session.get(USER_SESSION_KEY)
    if not raw_user:
        return AuthStatus(authenticated=False)

    user = SessionUser.model_validate(raw_user)
    return AuthStatus(
        authenticated=True,
        user=StatusUser(email=user.email, name=user.name, authorized=user.authorized),
    )
