"""
OpenID Connect client for Microsoft Entra ID.

This module handles:
- Discovery of the provider metadata and JWKS (once per process)
- Building the authorization and end-session URLs
- Exchanging an authorization code for tokens (client_secret_post + PKCE)
- Verifying ID token signatures and standard claims with python-jose
"""

import asyncio
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwk, jwt

from ..config import Settings
from ..errors import ConfigMissing, InvalidIdToken, ProviderUnreachable, TokenExchangeFailed

logger = logging.getLogger("webhook_gateway.auth.oidc")

OIDC_SCOPE = "openid profile email"


class OIDCClient:
    """
    Provider handle shared by all requests.

    Metadata and signing keys are fetched on first use and kept for the
    lifetime of the process. ``ensure_ready`` serializes the first fetch
    behind an asyncio.Lock, so concurrent first requests trigger a single
    discovery call.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        self._lock = asyncio.Lock()
        self.metadata: Optional[Dict[str, Any]] = None
        self.jwks: Dict[str, Any] = {"keys": []}

    @property
    def ready(self) -> bool:
        return self.metadata is not None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # =========================================================================
    # Discovery
    # =========================================================================

    async def ensure_ready(self) -> Dict[str, Any]:
        """Return the provider metadata, discovering it on first use."""
        if self.metadata is not None:
            return self.metadata

        async with self._lock:
            if self.metadata is None:
                await self._discover()
        return self.metadata

    async def _discover(self) -> None:
        settings = self.settings
        if not (settings.ENTRA_TENANT_ID and settings.ENTRA_CLIENT_ID and settings.ENTRA_CLIENT_SECRET):
            raise ConfigMissing(
                "Entra OIDC not configured. Set ENTRA_TENANT_ID, ENTRA_CLIENT_ID, and ENTRA_CLIENT_SECRET."
            )

        metadata = await self._get_json(settings.discovery_url, "discovery document")
        for field in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"):
            if field not in metadata:
                logger.error(f"Discovery document missing '{field}'")
                raise ProviderUnreachable()

        # multi-tenant metadata carries a placeholder instead of the tenant id
        metadata["issuer"] = metadata["issuer"].replace("{tenantid}", settings.ENTRA_TENANT_ID)

        self.jwks = await self._fetch_jwks(metadata["jwks_uri"])
        self.metadata = metadata
        logger.info("Discovered issuer", extra={"issuer": metadata["issuer"]})

    async def _fetch_jwks(self, jwks_uri: str) -> Dict[str, Any]:
        jwks = await self._get_json(jwks_uri, "JWKS")
        if "keys" not in jwks:
            logger.error("Invalid JWKS response: missing 'keys' field")
            raise ProviderUnreachable()
        return jwks

    async def _get_json(self, url: str, what: str) -> Dict[str, Any]:
        try:
            response = await self._http.get(url)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch {what}: {e}", extra={"url": url})
            raise ProviderUnreachable() from e
        if not isinstance(document, dict):
            logger.error(f"Invalid {what}: expected a JSON object", extra={"url": url})
            raise ProviderUnreachable()
        return document

    # =========================================================================
    # URLs
    # =========================================================================

    async def authorization_url(self, *, state: str, nonce: str, code_challenge: str) -> str:
        metadata = await self.ensure_ready()
        params = {
            "client_id": self.settings.ENTRA_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.redirect_uri,
            "response_mode": "query",
            "scope": OIDC_SCOPE,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return _with_query(metadata["authorization_endpoint"], params)

    async def end_session_url(self, id_token_hint: Optional[str] = None) -> str:
        metadata = await self.ensure_ready()
        endpoint = metadata.get("end_session_endpoint") or f"{self.settings.authority}/oauth2/v2.0/logout"
        params = {"post_logout_redirect_uri": self.settings.post_logout_redirect_uri}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        return _with_query(endpoint, params)

    # =========================================================================
    # Token exchange
    # =========================================================================

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> Dict[str, Any]:
        """
        Exchange authorization code for access and ID tokens.

        Args:
            code: Authorization code from callback
            code_verifier: PKCE code verifier stored with the transaction
            redirect_uri: Redirect URI (must match the one used in login)

        Returns:
            Token response dictionary containing id_token, access_token, etc.

        Raises:
            ProviderUnreachable: If the token endpoint cannot be reached
            TokenExchangeFailed: If the provider rejects the request
        """
        metadata = await self.ensure_ready()
        payload = {
            "client_id": self.settings.ENTRA_CLIENT_ID,
            "client_secret": self.settings.ENTRA_CLIENT_SECRET,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "scope": OIDC_SCOPE,
        }

        try:
            response = await self._http.post(
                metadata["token_endpoint"],
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable: {e}")
            raise ProviderUnreachable() from e

        if not response.is_success:
            logger.warning(
                "Token exchange failed",
                extra={"status_code": response.status_code, "provider_error": _provider_error_code(response)},
            )
            raise TokenExchangeFailed()

        try:
            token_data = response.json()
        except ValueError as e:
            raise TokenExchangeFailed("Invalid token response from the identity provider.") from e

        if not isinstance(token_data, dict) or not token_data.get("id_token"):
            raise TokenExchangeFailed("No ID token received from identity provider.")

        return token_data

    # =========================================================================
    # ID token verification
    # =========================================================================

    async def verify_id_token(self, id_token: str) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        Checks the RS256 signature against the provider JWKS (refreshing the
        keys once when the kid is unknown), then exp/nbf/iat, audience and
        issuer. The nonce is compared by the caller.
        """
        metadata = await self.ensure_ready()

        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise InvalidIdToken() from e

        kid = header.get("kid")
        signing_key = _find_key(self.jwks, kid)
        if signing_key is None:
            # keys may have rotated since discovery
            async with self._lock:
                self.jwks = await self._fetch_jwks(metadata["jwks_uri"])
            signing_key = _find_key(self.jwks, kid)
            if signing_key is None:
                logger.warning("No JWKS key matches the ID token", extra={"kid": kid})
                raise InvalidIdToken()

        try:
            public_key = jwk.construct(signing_key, algorithm=signing_key.get("alg", "RS256"))
            return jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=["RS256"],
                audience=self.settings.ENTRA_CLIENT_ID,
                issuer=metadata["issuer"],
                options={
                    "verify_at_hash": False,
                    "leeway": 10,
                },
            )
        except JWTError as e:
            logger.warning(f"ID token verification failed: {e}")
            raise InvalidIdToken() from e


def _find_key(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    if not kid:
        return None
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None


def _with_query(endpoint: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urlencode(params)}"


def _provider_error_code(response: httpx.Response) -> Optional[str]:
    """OAuth ``error`` code from a failed token response, when it carries one."""
    if not response.headers.get("content-type", "").startswith("application/json"):
        return None
    try:
        error_data = response.json()
    except ValueError:
        return None
    if not isinstance(error_data, dict):
        return None
    return error_data.get("error")
