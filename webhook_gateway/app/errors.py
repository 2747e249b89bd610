"""
Exception taxonomy for the gateway.

Every error carries a ``message`` that is safe to show to the user. The
HTTP mapping lives in ``main.register_exception_handlers``.
"""

from typing import List, Optional


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    status_code = 500
    title = "Error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return "An unexpected error occurred"


# =============================================================================
# Configuration
# =============================================================================

class ConfigMissing(GatewayError):
    """Required configuration is absent (fatal at startup in production)."""

    def __init__(self, message: Optional[str] = None, missing: Optional[List[str]] = None):
        self.missing = list(missing or [])
        super().__init__(message)

    def default_message(self) -> str:
        return f"Missing required environment variables: {', '.join(self.missing)}"


# =============================================================================
# Identity provider / OIDC transaction
# =============================================================================

class ProviderUnreachable(GatewayError):
    status_code = 502
    title = "Sign-in Unavailable"

    def default_message(self) -> str:
        return "Unable to communicate with the identity provider. Please try again later."


class OIDCError(GatewayError):
    """A login attempt failed; the user has to start a new one."""

    status_code = 400
    title = "Login Error"


class NoTransaction(OIDCError):
    def default_message(self) -> str:
        return "No login in progress for this session. Please try logging in again."


class TransactionExpired(OIDCError):
    def default_message(self) -> str:
        return "Login session expired. Please try again."


class StateMismatch(OIDCError):
    def default_message(self) -> str:
        return "Invalid state parameter. Please try logging in again."


class NonceMismatch(OIDCError):
    def default_message(self) -> str:
        return "Invalid nonce in ID token. Please try logging in again."


class TokenExchangeFailed(OIDCError):
    def default_message(self) -> str:
        return "The identity provider rejected the sign-in. Please try again."


class InvalidIdToken(OIDCError):
    def default_message(self) -> str:
        return "Unable to verify identity token. Please try again."


class ProviderError(OIDCError):
    """The provider redirected back with an ``error`` parameter."""

    def default_message(self) -> str:
        return "Sign-in was not completed."


# =============================================================================
# Authorization
# =============================================================================

class AuthorizationError(GatewayError):
    status_code = 400
    title = "Access Could Not Be Verified"


class GroupOverage(AuthorizationError):
    def default_message(self) -> str:
        return (
            "Group membership could not be verified. Your account has too many group "
            "memberships. Please contact your administrator."
        )


class GroupClaimMissing(AuthorizationError):
    def default_message(self) -> str:
        return (
            "Group membership could not be verified. The application is not configured "
            "to receive group claims. Please contact your administrator."
        )


# =============================================================================
# Session store
# =============================================================================

class StoreUnavailable(GatewayError):
    status_code = 503
    title = "Service Unavailable"

    def default_message(self) -> str:
        return "Session store unavailable"


# =============================================================================
# Guards
# =============================================================================

class NotAuthenticated(GatewayError):
    status_code = 401
    title = "Sign-in Required"

    def __init__(self, message: Optional[str] = None, *, api: bool = True, return_to: str = "/"):
        self.api = api
        self.return_to = return_to
        super().__init__(message)

    def default_message(self) -> str:
        return "Not authenticated"


class AccessDenied(GatewayError):
    status_code = 403
    title = "Access Denied"

    def __init__(self, message: Optional[str] = None, *, api: bool = True):
        self.api = api
        super().__init__(message)

    def default_message(self) -> str:
        return "Access denied. Not in allowed group."


# =============================================================================
# Proxy
# =============================================================================

class ProxyUpstreamError(GatewayError):
    status_code = 500

    def default_message(self) -> str:
        return "Proxy error"
