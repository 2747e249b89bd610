"""
Tests for the OIDC transaction lifecycle (begin_login / complete_login).

The OIDC client is replaced by a stub so the tests exercise only the
transaction rules: state, nonce, expiry and cleanup.
"""

from typing import Any, Dict, List
from urllib.parse import parse_qsl, urlencode, urlsplit

import pytest

from conftest import make_settings
from webhook_gateway.app.auth.transaction import (
    TRANSACTION_SESSION_KEY,
    TRANSACTION_TTL_SECONDS,
    OIDCTransactionManager,
)
from webhook_gateway.app.auth.utils import generate_code_challenge
from webhook_gateway.app.errors import (
    NonceMismatch,
    NoTransaction,
    ProviderError,
    StateMismatch,
    TransactionExpired,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubOIDCClient:
    def __init__(self):
        self.claims: Dict[str, Any] = {"sub": "user-1"}
        self.exchanges: List[tuple] = []

    async def authorization_url(self, *, state: str, nonce: str, code_challenge: str) -> str:
        query = urlencode({"state": state, "nonce": nonce, "code_challenge": code_challenge})
        return f"https://idp.example.com/authorize?{query}"

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> Dict[str, Any]:
        self.exchanges.append((code, code_verifier, redirect_uri))
        return {"id_token": "raw-id-token", "access_token": "raw-access-token"}

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        return dict(self.claims)

    async def end_session_url(self, id_token_hint=None) -> str:
        return f"https://idp.example.com/logout?hint={id_token_hint}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stub_client():
    return StubOIDCClient()


@pytest.fixture
def manager(stub_client, clock):
    return OIDCTransactionManager(make_settings(), stub_client, clock=clock)


async def begin(manager, session, return_to="/chat.html") -> Dict[str, str]:
    url = await manager.begin_login(session, return_to)
    return dict(parse_qsl(urlsplit(url).query))


class TestBeginLogin:

    @pytest.mark.asyncio
    async def test_stores_transaction(self, manager, clock):
        session = {}
        params = await begin(manager, session)

        transaction = session[TRANSACTION_SESSION_KEY]
        assert transaction["state"] == params["state"]
        assert transaction["nonce"] == params["nonce"]
        assert transaction["return_to"] == "/chat.html"
        assert transaction["created_at"] == clock.now
        assert generate_code_challenge(transaction["code_verifier"]) == params["code_challenge"]

    @pytest.mark.asyncio
    async def test_unsafe_return_to_replaced(self, manager):
        session = {}
        await begin(manager, session, return_to="//evil.example.com")
        assert session[TRANSACTION_SESSION_KEY]["return_to"] == "/"

    @pytest.mark.asyncio
    async def test_new_login_replaces_pending_transaction(self, manager):
        session = {}
        first = await begin(manager, session)
        second = await begin(manager, session)
        assert first["state"] != second["state"]
        assert session[TRANSACTION_SESSION_KEY]["state"] == second["state"]


class TestCompleteLogin:

    @pytest.mark.asyncio
    async def test_success(self, manager, stub_client):
        session = {}
        params = await begin(manager, session)
        stub_client.claims["nonce"] = params["nonce"]

        result = await manager.complete_login(session, {"code": "c0de", "state": params["state"]})

        assert result.return_to == "/chat.html"
        assert result.claims["sub"] == "user-1"
        assert result.tokens["id_token"] == "raw-id-token"
        assert TRANSACTION_SESSION_KEY not in session
        code, verifier, redirect_uri = stub_client.exchanges[0]
        assert code == "c0de"
        assert generate_code_challenge(verifier) == params["code_challenge"]
        assert redirect_uri == "http://testserver/auth/callback"

    @pytest.mark.asyncio
    async def test_no_transaction(self, manager):
        with pytest.raises(NoTransaction):
            await manager.complete_login({}, {"code": "c", "state": "s"})

    @pytest.mark.asyncio
    async def test_expired_transaction(self, manager, clock, stub_client):
        session = {}
        params = await begin(manager, session)
        clock.advance(TRANSACTION_TTL_SECONDS + 1)

        with pytest.raises(TransactionExpired):
            await manager.complete_login(session, {"code": "c", "state": params["state"]})
        assert TRANSACTION_SESSION_KEY not in session
        assert stub_client.exchanges == []

    @pytest.mark.asyncio
    async def test_transaction_at_ttl_boundary_still_valid(self, manager, clock, stub_client):
        session = {}
        params = await begin(manager, session)
        stub_client.claims["nonce"] = params["nonce"]
        clock.advance(TRANSACTION_TTL_SECONDS)

        result = await manager.complete_login(session, {"code": "c", "state": params["state"]})
        assert result.return_to == "/chat.html"

    @pytest.mark.asyncio
    async def test_state_mismatch(self, manager, stub_client):
        session = {}
        await begin(manager, session)

        with pytest.raises(StateMismatch):
            await manager.complete_login(session, {"code": "c", "state": "forged"})
        assert TRANSACTION_SESSION_KEY not in session
        assert stub_client.exchanges == []

    @pytest.mark.asyncio
    async def test_missing_state(self, manager):
        session = {}
        await begin(manager, session)
        with pytest.raises(StateMismatch):
            await manager.complete_login(session, {"code": "c"})

    @pytest.mark.asyncio
    async def test_nonce_mismatch(self, manager, stub_client):
        session = {}
        params = await begin(manager, session)
        stub_client.claims["nonce"] = "replayed-nonce"

        with pytest.raises(NonceMismatch):
            await manager.complete_login(session, {"code": "c", "state": params["state"]})
        assert TRANSACTION_SESSION_KEY not in session

    @pytest.mark.asyncio
    async def test_provider_error_clears_transaction(self, manager):
        session = {}
        await begin(manager, session)

        with pytest.raises(ProviderError) as exc_info:
            await manager.complete_login(
                session, {"error": "access_denied", "error_description": "User cancelled"}
            )
        assert exc_info.value.message == "Authentication failed: User cancelled"
        assert TRANSACTION_SESSION_KEY not in session

    @pytest.mark.asyncio
    async def test_transaction_is_single_use(self, manager, stub_client):
        session = {}
        params = await begin(manager, session)
        stub_client.claims["nonce"] = params["nonce"]
        callback = {"code": "c", "state": params["state"]}

        await manager.complete_login(session, callback)
        with pytest.raises(NoTransaction):
            await manager.complete_login(session, callback)


@pytest.mark.asyncio
async def test_build_logout_url_delegates_to_client(manager):
    assert await manager.build_logout_url("tok") == "https://idp.example.com/logout?hint=tok"
