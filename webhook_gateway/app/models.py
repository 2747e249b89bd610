"""
Data Models Module

This module defines Pydantic models for the records kept in the server-side
session and for the JSON bodies returned by the service.

Models are organized by functional area:
- Session models (signed-in user, pending OIDC transaction)
- Status models (auth status, health and readiness probes)
- Error models
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Session Models
# ============================================================================

class SessionUser(BaseModel):
    """User record written to the session after a successful callback."""
    sub: Optional[str] = Field(None, description="Subject identifier from the ID token")
    email: Optional[str] = Field(None, description="User email address")
    name: Optional[str] = Field(None, description="User display name")
    authorized: bool = Field(False, description="Member of the allowed group")
    id_token: Optional[str] = Field(None, description="Raw ID token, kept for the logout hint")


class OIDCTransaction(BaseModel):
    """Ephemeral state held in the session between /auth/login and /auth/callback."""
    state: str
    nonce: str
    code_verifier: str
    return_to: str = "/"
    created_at: float = Field(..., description="Creation time, epoch seconds")


class LoginResult(BaseModel):
    """Outcome of a completed OIDC callback."""
    tokens: Dict[str, Any]
    claims: Dict[str, Any]
    return_to: str


# ============================================================================
# Status Models
# ============================================================================

class StatusUser(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    authorized: bool = False


class AuthStatus(BaseModel):
    authenticated: bool
    user: Optional[StatusUser] = None


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=_utcnow)


class ReadinessResponse(BaseModel):
    status: str = Field(..., description="'ready' or 'not ready'")
    session_store: str = Field(..., description="'connected' or 'disconnected'")


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Human-readable error message")
