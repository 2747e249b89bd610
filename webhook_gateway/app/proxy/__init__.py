"""
Proxy Package
=============

This package implements the authenticated relay from the chat frontend to
the n8n webhook.

Main Components:
----------------
- forwarder.py: WebhookForwarder (Basic-auth injection, response streaming)
- routes.py: FastAPI router with /proxy/webhook and /proxy/webhook-test

Usage:
------
    from webhook_gateway.app.proxy import proxy_router
    app.include_router(proxy_router, prefix="/proxy")
"""

from .forwarder import WebhookForwarder
from .routes import proxy_router

__all__ = ["proxy_router", "WebhookForwarder"]
