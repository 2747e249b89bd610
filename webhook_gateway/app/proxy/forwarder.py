"""
Webhook Forwarder
=================

Relays one request to the downstream webhook with Basic-auth credentials
injected, and streams the upstream response back to the caller.

Single attempt, no retry. A failure to reach the upstream (or a timeout
before the response headers arrive) raises ProxyUpstreamError.
"""

import base64
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from ..errors import ProxyUpstreamError

logger = logging.getLogger("webhook_gateway.proxy")

# Headers describing the upstream connection or encoding, not the payload
EXCLUDED_RESPONSE_HEADERS = frozenset({
    "transfer-encoding",
    "content-encoding",
    "content-length",
    "connection",
    "keep-alive",
})

BODYLESS_METHODS = frozenset({"GET", "HEAD"})


def build_basic_auth(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def build_upstream_headers(
    request_headers: Mapping[str, str],
    credentials: Tuple[str, str],
) -> Dict[str, str]:
    """
    Build headers for the upstream request.

    Only the caller's Content-Type is carried over; the caller's cookies and
    Authorization header are never forwarded.
    """
    return {
        "Content-Type": request_headers.get("content-type") or "application/json",
        "Authorization": build_basic_auth(*credentials),
    }


def filter_response_headers(headers: httpx.Headers) -> List[Tuple[str, str]]:
    """Upstream headers minus the excluded ones, repeated names kept in order."""
    return [
        (name.lower(), value)
        for name, value in headers.multi_items()
        if name.lower() not in EXCLUDED_RESPONSE_HEADERS
    ]


class WebhookForwarder:
    """Forwards requests to the webhook over a shared httpx.AsyncClient."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout_seconds: float = 30.0):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def forward(
        self,
        method: str,
        headers: Mapping[str, str],
        body: Any,
        target_url: str,
        credentials: Tuple[str, str],
    ) -> StreamingResponse:
        """
        Send the request upstream and stream its response back.

        Args:
            method: HTTP method of the incoming request
            headers: Incoming request headers
            body: Parsed JSON body (None or empty is sent as ``{}``)
            target_url: Webhook URL
            credentials: (username, password) for Basic auth

        Returns:
            StreamingResponse with the upstream status, filtered headers and body

        Raises:
            ProxyUpstreamError: If the upstream cannot be reached
        """
        method = method.upper()
        content = None
        if method not in BODYLESS_METHODS:
            content = json.dumps(body if body is not None else {}).encode("utf-8")

        upstream_request = self.client.build_request(
            method,
            target_url,
            headers=build_upstream_headers(headers, credentials),
            content=content,
        )

        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            logger.error("Webhook request timeout", extra={"method": method})
            raise ProxyUpstreamError() from e
        except httpx.HTTPError as e:
            logger.error(f"Webhook request failed: {e}", extra={"method": method})
            raise ProxyUpstreamError() from e

        logger.info(
            "Webhook responded",
            extra={"method": method, "status_code": upstream.status_code},
        )

        response = StreamingResponse(
            self._relay(upstream),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        for name, value in filter_response_headers(upstream.headers):
            response.headers.append(name, value)
        return response

    async def _relay(self, upstream: httpx.Response):
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            # headers are already sent, the caller sees a truncated body
            logger.error(f"Webhook response interrupted: {e}")
