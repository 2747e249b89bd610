"""
Authentication Package

This package handles sign-in and authorization for the gateway using
Microsoft Entra ID and OpenID Connect (OIDC).

Key responsibilities:
- OIDC Authorization Code flow with PKCE (login, callback, logout)
- ID token validation using the provider JWKS
- Group-based access control (ENTRA_ALLOWED_GROUP_ID)
- Route guards for browser and API callers

Modules:
- routes: Public authentication endpoints (/auth/login, /auth/callback, etc.)
- oidc: Provider discovery, token exchange and ID token verification
- transaction: Per-login state kept in the session between login and callback
- authorization: Group membership evaluation
- guards: FastAPI dependencies protecting routes
- pages: HTML error pages
- utils: PKCE, return target validation and claim helpers

The authentication flow:
1. Browser hits a protected route and is sent to /auth/login
2. User authenticates with Microsoft Entra ID
3. Gateway validates the callback, checks group membership, regenerates the session
4. Subsequent requests carry the session cookie
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
