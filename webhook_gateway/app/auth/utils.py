"""
Authentication utilities for the OIDC login flow.

This module handles:
- Random values for state / nonce and the PKCE verifier/challenge pair
- Validation of post-login return targets (open redirect protection)
- Extraction of user details from ID token claims
"""

import base64
import hashlib
import re
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlsplit


# =============================================================================
# Random values and PKCE
# =============================================================================

def generate_secure_random(num_bytes: int = 32) -> str:
    """
    Cryptographically random, URL-safe string (used for state and nonce).

    Args:
        num_bytes: Number of random bytes before encoding

    Returns:
        Base64-URL-encoded string without padding
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    return generate_secure_random(32)


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


# =============================================================================
# Return target validation
# =============================================================================

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(value: str) -> Optional[tuple]:
    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None
    try:
        port = parts.port or _DEFAULT_PORTS[scheme]
    except ValueError:
        return None
    return scheme, parts.hostname.lower(), port


def _collapse_slashes(path: str) -> str:
    return re.sub(r"/+", "/", path)


def validate_return_to(return_to: Optional[str], base_url: str) -> str:
    """
    Validate that a return URL is safe (same-origin only).

    Accepted:
        - relative paths starting with a single '/' (runs of '/' collapsed)
        - absolute http(s) URLs with the same origin as base_url, reduced to
          path + query + fragment

    Anything containing '..' or a backslash, protocol-relative URLs and
    foreign origins yield '/'.

    Example:
        >>> validate_return_to("/chat.html", "https://chat.example.com")
        '/chat.html'
        >>> validate_return_to("//evil.example", "https://chat.example.com")
        '/'
    """
    if not return_to or not isinstance(return_to, str):
        return "/"

    trimmed = return_to.strip()
    if not trimmed or ".." in trimmed or "\\" in trimmed or trimmed.startswith("//"):
        return "/"

    if trimmed.startswith("/"):
        return _collapse_slashes(trimmed)

    target_origin = _origin(trimmed)
    if target_origin is None or target_origin != _origin(base_url):
        return "/"

    parts = urlsplit(trimmed)
    result = _collapse_slashes(parts.path) or "/"
    if parts.query:
        result += f"?{parts.query}"
    if parts.fragment:
        result += f"#{parts.fragment}"
    return result


# =============================================================================
# Claims helpers
# =============================================================================

def extract_email_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    """
    Extract email address from ID token claims.

    Entra ID may use different claim names depending on configuration:
    - email: Email address (optional claim)
    - preferred_username: Usually the UPN (user@domain.com)
    - upn: User Principal Name

    Args:
        claims: Decoded ID token claims

    Returns:
        Email address if found, None otherwise
    """
    for claim_name in ("email", "preferred_username", "upn"):
        value = claims.get(claim_name)
        if value and "@" in value:
            return value.lower().strip()

    for claim_name in ("email", "preferred_username", "upn"):
        if claims.get(claim_name):
            return claims[claim_name]

    return None


def get_user_display_name(claims: Dict[str, Any]) -> str:
    """
    Extract user's display name from claims.

    Args:
        claims: Decoded ID token claims

    Returns:
        Display name or email as fallback
    """
    name = claims.get("name") or claims.get("given_name")
    if name:
        return name

    email = extract_email_from_claims(claims)
    if email and "@" in email:
        return email.split("@")[0].title()

    return "User"
