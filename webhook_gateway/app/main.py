"""
FastAPI Webhook Gateway Application Factory
===========================================

Entry point for the gateway that sits between the browser chat frontend and
the n8n chat webhook.

Architecture:
    Browser → Gateway (this service) → n8n webhook

Routers:
    - /auth/*       : OIDC login against Microsoft Entra ID (mounted when configured)
    - /proxy/*      : Authenticated relay to the webhook
    - /healthz      : Liveness probe
    - /readyz       : Readiness probe (session store connectivity)

Environment Variables:
    See app/config.py. In production (APP_ENV=production) SESSION_SECRET,
    REDIS_URL, ENTRA_TENANT_ID, ENTRA_CLIENT_ID, ENTRA_CLIENT_SECRET,
    ENTRA_ALLOWED_GROUP_ID and BASE_URL are required.

Running the Service:
    Development:
        uvicorn webhook_gateway.app.main:app --reload --port 3000

    Production:
        APP_ENV=production uvicorn webhook_gateway.app.main:app --host 0.0.0.0 --port 3000
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from .auth.guards import is_api_request, require_authorized
from .auth.oidc import OIDCClient
from .auth.pages import render_access_denied_page, render_error_page
from .auth.routes import auth_router
from .auth.transaction import OIDCTransactionManager
from .config import Settings, get_settings, validate_configuration
from .errors import (
    AccessDenied,
    AuthorizationError,
    GatewayError,
    NotAuthenticated,
    OIDCError,
    ProviderUnreachable,
)
from .models import HealthResponse, ReadinessResponse, SessionUser
from .proxy.forwarder import WebhookForwarder
from .proxy.routes import proxy_router
from .session import SessionMiddleware, SessionStore, build_session_store, open_session_store

logger = logging.getLogger("webhook_gateway.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Validate configuration (fatal in production)
        - Connect the session store (memory fallback outside production)

    Shutdown tasks:
        - Close the session store and the outbound HTTP clients
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)

    validate_configuration(settings)

    app.state.session_store = await open_session_store(app.state.session_store, settings)

    logger.info(
        "Webhook gateway started",
        extra={
            "environment": settings.APP_ENV,
            "base_url": settings.BASE_URL,
            "oidc_configured": settings.oidc_configured,
        },
    )

    yield

    logger.info("Shutting down webhook gateway")
    await app.state.forwarder.close()
    await app.state.oidc_client.close()
    await app.state.session_store.close()
    logger.info("Webhook gateway shutdown complete")


def register_exception_handlers(app: FastAPI) -> None:
    """Map GatewayError subclasses to JSON bodies or HTML pages."""

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if isinstance(exc, NotAuthenticated):
            if exc.api:
                return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
            if not request.app.state.settings.oidc_configured:
                # /auth is not mounted, there is no login to send the browser to
                return render_error_page(
                    exc.title,
                    "Sign-in is not configured for this service.",
                    show_retry=False,
                    status_code=exc.status_code,
                )
            return RedirectResponse(
                url=f"/auth/login?returnTo={quote(exc.return_to, safe='')}",
                status_code=302,
            )

        if isinstance(exc, AccessDenied):
            if exc.api:
                return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
            return render_access_denied_page(exc.message)

        if isinstance(exc, (OIDCError, AuthorizationError)):
            logger.warning(
                f"Login failed: {type(exc).__name__}",
                extra={"path": request.url.path},
            )
            return render_error_page(exc.title, exc.message, status_code=exc.status_code)

        logger.error(
            f"{type(exc).__name__}: {exc.message}",
            extra={"path": request.url.path, "method": request.method},
        )
        if request.url.path.startswith("/proxy/") or is_api_request(request):
            return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
        return render_error_page(
            exc.title,
            exc.message,
            show_retry=isinstance(exc, ProviderUnreachable),
            status_code=exc.status_code,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    *,
    session_store: Optional[SessionStore] = None,
    oidc_client: Optional[OIDCClient] = None,
    forwarder: Optional[WebhookForwarder] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Configuration snapshot (default: loaded from the environment)
        session_store: Session store to use instead of one built from settings
        oidc_client: OIDC client to use instead of one talking to Entra ID
        forwarder: Webhook forwarder to use instead of a fresh one

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Webhook Gateway",
        description="Entra ID sign-in and authenticated relay for the chat webhook",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_store = session_store if session_store is not None else build_session_store(settings)
    app.state.oidc_client = oidc_client if oidc_client is not None else OIDCClient(settings)
    app.state.oidc = OIDCTransactionManager(settings, app.state.oidc_client)
    app.state.forwarder = forwarder if forwarder is not None else WebhookForwarder(
        timeout_seconds=settings.PROXY_TIMEOUT_SECONDS
    )

    app.add_middleware(SessionMiddleware, settings=settings)
    register_exception_handlers(app)

    # Auth router: OIDC login, callback, logout and status
    if settings.oidc_configured:
        app.include_router(auth_router, prefix="/auth", tags=["Authentication"])
    else:
        logger.warning("Entra OIDC not configured. Auth routes will not work.")

    # Proxy router: authenticated relay to the chat webhook
    app.include_router(proxy_router, prefix="/proxy", tags=["Webhook Proxy"])

    @app.get("/healthz", response_model=HealthResponse, tags=["System"])
    async def healthz() -> HealthResponse:
        """Liveness probe. Never touches the session store."""
        return HealthResponse(status="ok")

    @app.get("/readyz", response_model=ReadinessResponse, tags=["System"])
    async def readyz(request: Request):
        """Readiness probe: 503 while the session store does not answer."""
        store: Optional[SessionStore] = request.app.state.session_store
        if store is not None and await store.ping():
            return ReadinessResponse(status="ready", session_store="connected")
        return JSONResponse(
            status_code=503,
            content=ReadinessResponse(status="not ready", session_store="disconnected").model_dump(),
        )

    @app.get("/", tags=["System"])
    async def root(user: SessionUser = Depends(require_authorized)):
        """Signed-in members of the allowed group go straight to the chat page."""
        return RedirectResponse(url=settings.DEFAULT_RETURN_PATH, status_code=302)

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m webhook_gateway.app.main
    """
    settings = get_settings()

    uvicorn.run(
        "webhook_gateway.app.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
