"""
Proxy Routes - Webhook Request Forwarding
=========================================

Authenticated relay from the chat frontend to the n8n webhook.

Security Model:
---------------
1. The caller must hold a session whose user is in the allowed group
   (401 {"error": "Not authenticated"} / 403 JSON otherwise)
2. The request body must be JSON and no larger than PROXY_MAX_BODY_BYTES
3. Basic-auth credentials for the webhook are injected here; the caller's
   own Authorization header and cookies are never forwarded

Endpoints:
----------
- ALL /proxy/webhook: Forward to N8N_WEBHOOK_URL
- ALL /proxy/webhook-test: Forward to N8N_WEBHOOK_URL_TEST (falls back to N8N_WEBHOOK_URL)
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..config import Settings
from ..errors import ConfigMissing
from ..models import SessionUser
from ..auth.guards import require_api_user
from .forwarder import BODYLESS_METHODS, WebhookForwarder

logger = logging.getLogger("webhook_gateway.proxy")

proxy_router = APIRouter()

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# ============================================================================
# Dependencies
# ============================================================================

def get_forwarder(request: Request) -> WebhookForwarder:
    """
    Dependency to get the webhook forwarder from app state.

    Args:
        request: FastAPI request object

    Returns:
        WebhookForwarder sharing one httpx.AsyncClient
    """
    forwarder = getattr(request.app.state, "forwarder", None)
    if forwarder is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Proxy client not initialized",
        )
    return forwarder


async def read_json_body(request: Request, max_bytes: int) -> Any:
    """
    Read and parse the request body.

    Returns None for GET/HEAD and for an empty body.

    Raises:
        HTTPException: 413 if the body exceeds max_bytes, 400 if it is not JSON
    """
    if request.method.upper() in BODYLESS_METHODS:
        return None

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Request body too large")

    raw = bytearray()
    async for chunk in request.stream():
        raw.extend(chunk)
        if len(raw) > max_bytes:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Request body too large")

    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")


# ============================================================================
# Proxy Endpoints
# ============================================================================

async def _relay(request: Request, target_url: str, user: SessionUser, forwarder: WebhookForwarder):
    settings: Settings = request.app.state.settings
    if not target_url:
        logger.error("Webhook URL not configured", extra={"path": request.url.path})
        raise ConfigMissing("Webhook URL not configured")

    body = await read_json_body(request, settings.PROXY_MAX_BODY_BYTES)

    logger.info(
        "Proxying request to webhook",
        extra={"method": request.method, "path": request.url.path, "user_email": user.email},
    )

    return await forwarder.forward(
        request.method,
        request.headers,
        body,
        target_url,
        (settings.N8N_USERNAME, settings.N8N_PASSWORD),
    )


@proxy_router.api_route("/webhook", methods=PROXY_METHODS)
async def proxy_webhook(
    request: Request,
    user: SessionUser = Depends(require_api_user),
    forwarder: WebhookForwarder = Depends(get_forwarder),
):
    """Forward the request to the production webhook."""
    return await _relay(request, request.app.state.settings.N8N_WEBHOOK_URL, user, forwarder)


@proxy_router.api_route("/webhook-test", methods=PROXY_METHODS)
async def proxy_webhook_test(
    request: Request,
    user: SessionUser = Depends(require_api_user),
    forwarder: WebhookForwarder = Depends(get_forwarder),
):
    """Forward the request to the test webhook, or the production one if none is set."""
    return await _relay(request, request.app.state.settings.webhook_target_test, user, forwarder)
