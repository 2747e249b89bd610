"""
Shared fixtures for the gateway tests.

Provides an RSA key pair and JWKS for minting ID tokens, a fake Entra ID
provider served through httpx.MockTransport, a fake n8n webhook, and an
application wired to both with an in-memory session store.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from itsdangerous import TimestampSigner
from jwt.algorithms import RSAAlgorithm

from webhook_gateway.app.auth.oidc import OIDCClient
from webhook_gateway.app.config import Settings
from webhook_gateway.app.main import create_app
from webhook_gateway.app.proxy.forwarder import WebhookForwarder
from webhook_gateway.app.session.middleware import SIGNER_SALT, new_session_id
from webhook_gateway.app.session.store import MemorySessionStore

TENANT_ID = "test-tenant"
CLIENT_ID = "test-client-id"
GROUP_ID = "11111111-2222-3333-4444-555555555555"
AUTHORITY = f"https://login.microsoftonline.com/{TENANT_ID}"
ISSUER = f"{AUTHORITY}/v2.0"
WEBHOOK_URL = "https://n8n.example.com/webhook/chat"
WEBHOOK_TEST_URL = "https://n8n.example.com/webhook-test/chat"

DISCOVERY_DOCUMENT = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{AUTHORITY}/oauth2/v2.0/authorize",
    "token_endpoint": f"{AUTHORITY}/oauth2/v2.0/token",
    "jwks_uri": f"{AUTHORITY}/discovery/v2.0/keys",
    "end_session_endpoint": f"{AUTHORITY}/oauth2/v2.0/logout",
}


# =============================================================================
# Keys and tokens
# =============================================================================

def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return private_key, private_pem.decode()


TEST_PRIVATE_KEY_OBJ, TEST_PRIVATE_KEY = generate_test_keys()
TEST_KID = "test-key-id-2024"


def create_mock_id_token(
    nonce: Optional[str] = None,
    kid: str = TEST_KID,
    exp_delta_minutes: int = 60,
    audience: str = CLIENT_ID,
    issuer: str = ISSUER,
    **extra_claims: Any,
) -> str:
    """
    Create a mock ID token signed with the test private key.

    Args:
        nonce: Nonce claim (omitted when None)
        kid: Key ID for JWKS matching
        exp_delta_minutes: Token expiry in minutes (negative for expired)
        audience: aud claim
        issuer: iss claim
        extra_claims: Additional claims (groups, _claim_names, ...)
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": issuer,
        "sub": "test-user-sub-123",
        "aud": audience,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "iat": now - timedelta(minutes=1),
        "email": "Test.User@Example.com",
        "name": "Test User",
        "preferred_username": "test.user@example.com",
    }
    if nonce is not None:
        payload["nonce"] = nonce
    payload.update(extra_claims)

    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})


def create_mock_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    """JWKS document publishing the test public key under ``kid``."""
    key = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY_OBJ.public_key(), as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    key["alg"] = "RS256"
    return {"keys": [key]}


# =============================================================================
# Fake identity provider and webhook
# =============================================================================

class FakeEntra:
    """Discovery, JWKS and token endpoints of a tenant, for httpx.MockTransport."""

    def __init__(self):
        self.discovery_calls = 0
        self.jwks_calls = 0
        self.token_requests: List[Dict[str, str]] = []
        self.nonce: Optional[str] = None
        self.claims: Dict[str, Any] = {"groups": [GROUP_ID]}
        self.token_status = 200
        self.token_error_body = json.dumps(
            {"error": "invalid_grant", "error_description": "AADSTS70008: code expired"}
        ).encode()
        self.token_kid = TEST_KID
        self.jwks = create_mock_jwks()
        self.unreachable = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            self.discovery_calls += 1
            return httpx.Response(200, json=DISCOVERY_DOCUMENT)
        if path.endswith("/discovery/v2.0/keys"):
            self.jwks_calls += 1
            return httpx.Response(200, json=self.jwks)
        if path.endswith("/oauth2/v2.0/token"):
            form = dict(parse_qsl(request.content.decode()))
            self.token_requests.append(form)
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    content=self.token_error_body,
                    headers={"content-type": "application/json"},
                )
            return httpx.Response(
                200,
                json={
                    "token_type": "Bearer",
                    "access_token": "mock-access-token",
                    "id_token": create_mock_id_token(nonce=self.nonce, kid=self.token_kid, **self.claims),
                    "expires_in": 3600,
                },
            )
        return httpx.Response(404)


class FakeWebhook:
    """Records forwarded requests and answers with a canned response."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.body: Any = {"output": "Hello from the agent"}
        self.headers = {"X-Workflow-Id": "wf-42", "Connection": "keep-alive", "Keep-Alive": "timeout=5"}
        self.error: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.body, headers=self.headers)


# =============================================================================
# Fixtures
# =============================================================================

def make_settings(**overrides: Any) -> Settings:
    values = dict(
        APP_ENV="development",
        BASE_URL="http://testserver",
        SESSION_SECRET="test-session-secret",
        ENTRA_TENANT_ID=TENANT_ID,
        ENTRA_CLIENT_ID=CLIENT_ID,
        ENTRA_CLIENT_SECRET="test-client-secret",
        ENTRA_ALLOWED_GROUP_ID=GROUP_ID,
        N8N_WEBHOOK_URL=WEBHOOK_URL,
        N8N_USERNAME="n8n-user",
        N8N_PASSWORD="n8n-pass",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def provider() -> FakeEntra:
    return FakeEntra()


@pytest.fixture
def webhook() -> FakeWebhook:
    return FakeWebhook()


@pytest.fixture
def session_store() -> MemorySessionStore:
    return MemorySessionStore()


def build_app(settings: Settings, provider: FakeEntra, webhook: FakeWebhook, session_store):
    oidc_client = OIDCClient(
        settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)),
    )
    forwarder = WebhookForwarder(
        client=httpx.AsyncClient(transport=httpx.MockTransport(webhook.handler)),
    )
    return create_app(
        settings,
        session_store=session_store,
        oidc_client=oidc_client,
        forwarder=forwarder,
    )


@pytest.fixture
def app(settings, provider, webhook, session_store):
    return build_app(settings, provider, webhook, session_store)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


# =============================================================================
# Helpers
# =============================================================================

def sign_session_id(settings: Settings, session_id: str) -> str:
    return TimestampSigner(settings.session_secret, salt=SIGNER_SALT).sign(session_id).decode("utf-8")


def unsign_cookie(settings: Settings, cookie: str) -> str:
    return TimestampSigner(settings.session_secret, salt=SIGNER_SALT).unsign(cookie).decode("utf-8")


def seed_session(client: TestClient, store, settings: Settings, data: Dict[str, Any]) -> str:
    """Write a session record directly and point the client's cookie at it."""
    session_id = new_session_id()
    asyncio.run(store.set(session_id, data))
    # cookies set by responses are stored under the effective host "testserver.local"
    client.cookies.set(
        settings.SESSION_COOKIE_NAME, sign_session_id(settings, session_id), domain="testserver.local"
    )
    return session_id


def signed_in_user(authorized: bool = True) -> Dict[str, Any]:
    return {
        "user": {
            "sub": "test-user-sub-123",
            "email": "test.user@example.com",
            "name": "Test User",
            "authorized": authorized,
            "id_token": "stored-id-token",
        }
    }


def start_login(client: TestClient, return_to: Optional[str] = "/chat.html"):
    """GET /auth/login and return (response, authorization query params)."""
    params = {"returnTo": return_to} if return_to is not None else None
    response = client.get("/auth/login", params=params, follow_redirects=False)
    assert response.status_code == 302
    query = dict(parse_qsl(urlsplit(response.headers["location"]).query))
    return response, query


def finish_login(client: TestClient, provider: FakeEntra, auth_params: Dict[str, str], **overrides: str):
    """Hit /auth/callback as the provider would after a successful sign-in."""
    provider.nonce = auth_params["nonce"]
    params = {"code": "mock-auth-code", "state": auth_params["state"]}
    params.update(overrides)
    return client.get("/auth/callback", params=params, follow_redirects=False)


def read_session(store, settings: Settings, client: TestClient) -> Optional[Dict[str, Any]]:
    cookie = client.cookies.get(settings.SESSION_COOKIE_NAME)
    return asyncio.run(store.get(unsign_cookie(settings, cookie)))
