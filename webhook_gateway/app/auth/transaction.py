"""
OIDC login transactions.

A transaction is the state kept in the session between ``/auth/login`` and
``/auth/callback``: state, nonce, PKCE verifier, return target and creation
time. There is at most one per session; starting a new login replaces it.
``complete_login`` removes it whatever the outcome.
"""

import logging
import secrets
import time
from typing import Any, Callable, Mapping, MutableMapping, Optional

from pydantic import ValidationError

from ..config import Settings
from ..errors import (
    NonceMismatch,
    NoTransaction,
    OIDCError,
    ProviderError,
    StateMismatch,
    TransactionExpired,
)
from ..models import LoginResult, OIDCTransaction
from .oidc import OIDCClient
from .utils import (
    generate_code_challenge,
    generate_code_verifier,
    generate_secure_random,
    validate_return_to,
)

logger = logging.getLogger("webhook_gateway.auth.transaction")

TRANSACTION_TTL_SECONDS = 5 * 60
TRANSACTION_SESSION_KEY = "oidc_transaction"


class OIDCTransactionManager:
    def __init__(self, settings: Settings, client: OIDCClient, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.client = client
        self._clock = clock

    async def begin_login(self, session: MutableMapping[str, Any], return_to: Optional[str]) -> str:
        """
        Start a login attempt and return the provider authorization URL.

        Args:
            session: Session to hold the transaction (caller persists it)
            return_to: Requested post-login target, validated here

        Returns:
            Authorization endpoint URL with state, nonce and S256 challenge
        """
        code_verifier = generate_code_verifier()
        transaction = OIDCTransaction(
            state=generate_secure_random(),
            nonce=generate_secure_random(),
            code_verifier=code_verifier,
            return_to=validate_return_to(return_to, self.settings.BASE_URL),
            created_at=self._clock(),
        )

        url = await self.client.authorization_url(
            state=transaction.state,
            nonce=transaction.nonce,
            code_challenge=generate_code_challenge(code_verifier),
        )
        session[TRANSACTION_SESSION_KEY] = transaction.model_dump()

        logger.info("Login started", extra={"return_to": transaction.return_to})
        return url

    async def complete_login(
        self, session: MutableMapping[str, Any], params: Mapping[str, str]
    ) -> LoginResult:
        """
        Validate the callback against the pending transaction and exchange the code.

        Raises:
            ProviderError: The provider returned an ``error`` parameter
            NoTransaction: No pending transaction in this session
            TransactionExpired: The transaction is older than five minutes
            StateMismatch: ``state`` differs from the stored value
            NonceMismatch: The ID token nonce differs from the stored value
            TokenExchangeFailed / InvalidIdToken / ProviderUnreachable: from the OIDC client
        """
        raw = session.pop(TRANSACTION_SESSION_KEY, None)

        if params.get("error"):
            logger.error(
                "Identity provider returned an error",
                extra={"provider_error": params.get("error")},
            )
            description = params.get("error_description") or params.get("error")
            raise ProviderError(f"Authentication failed: {description}")

        if raw is None:
            raise NoTransaction()
        try:
            transaction = OIDCTransaction.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding malformed login transaction")
            raise NoTransaction() from e

        if self._clock() - transaction.created_at > TRANSACTION_TTL_SECONDS:
            logger.info("Login transaction expired")
            raise TransactionExpired()

        if not secrets.compare_digest(str(params.get("state") or ""), transaction.state):
            logger.warning("State mismatch on callback")
            raise StateMismatch()

        code = params.get("code")
        if not code:
            raise OIDCError("No authorization code received. Please try logging in again.")

        tokens = await self.client.exchange_code(code, transaction.code_verifier, self.settings.redirect_uri)
        claims = await self.client.verify_id_token(tokens["id_token"])

        if not secrets.compare_digest(str(claims.get("nonce") or ""), transaction.nonce):
            logger.warning("Nonce mismatch in ID token", extra={"sub": claims.get("sub")})
            raise NonceMismatch()

        logger.info("Login completed", extra={"sub": claims.get("sub")})
        return LoginResult(tokens=tokens, claims=claims, return_to=transaction.return_to)

    async def build_logout_url(self, id_token_hint: Optional[str] = None) -> str:
        return await self.client.end_session_url(id_token_hint)
