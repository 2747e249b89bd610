"""
Server-side Session Middleware
==============================

The cookie carries only an opaque session id signed with itsdangerous;
the session data stays in the SessionStore held on ``app.state``.

The loaded Session is exposed as ``request.session``. Handlers that must
be sure a write has reached the store before they answer (login,
callback, logout) await ``session.save()`` themselves. Anything else that
changed is saved when the response starts.
"""

import json
import logging
import secrets
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, TimestampSigner
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..config import Settings
from ..errors import StoreUnavailable
from .store import SESSION_TTL_SECONDS, SessionStore

logger = logging.getLogger("webhook_gateway.session")

SIGNER_SALT = "webhook_gateway.session"


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class Session(dict):
    """
    Session data plus its identity.

    Attributes:
        session_id: Opaque identifier the cookie points at
        is_new: True until the record has been written to the store
        unavailable: The store could not be read for this request
        destroyed: destroy() was called during this request
    """

    def __init__(
        self,
        store: Optional[SessionStore],
        session_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        *,
        unavailable: bool = False,
        had_cookie: bool = False,
    ):
        super().__init__(data or {})
        self.store = store
        self.is_new = session_id is None
        self.session_id = session_id or new_session_id()
        self.unavailable = unavailable
        self.had_cookie = had_cookie
        self.destroyed = False
        self._saved_state = self._snapshot()

    def _snapshot(self) -> str:
        return json.dumps(self, sort_keys=True, default=str)

    @property
    def modified(self) -> bool:
        return self._snapshot() != self._saved_state

    @property
    def persisted(self) -> bool:
        return not self.is_new and not self.destroyed

    def ensure_available(self) -> None:
        if self.unavailable or self.store is None:
            raise StoreUnavailable()

    async def save(self) -> None:
        """Write the session to the store. Empty new sessions are not stored."""
        self.ensure_available()
        if self.destroyed:
            return
        if self.is_new and not self:
            return
        await self.store.set(self.session_id, dict(self))
        self.is_new = False
        self._saved_state = self._snapshot()

    async def regenerate(self) -> None:
        """
        Drop the current record and continue under a fresh id with no data.

        Callers write the new data and await save() right after.
        """
        self.ensure_available()
        old_id = self.session_id
        if not self.is_new:
            await self.store.destroy(old_id)
        self.clear()
        self.session_id = new_session_id()
        self.is_new = True
        self.destroyed = False
        self._saved_state = self._snapshot()
        logger.debug("Session regenerated", extra={"old_session": old_id[:8], "new_session": self.session_id[:8]})

    async def destroy(self) -> None:
        self.ensure_available()
        if not self.is_new:
            await self.store.destroy(self.session_id)
        self.clear()
        self.destroyed = True
        self._saved_state = self._snapshot()


class SessionMiddleware:
    """Pure ASGI middleware loading and committing server-side sessions."""

    def __init__(self, app: ASGIApp, settings: Settings):
        self.app = app
        self.cookie_name = settings.SESSION_COOKIE_NAME
        self.max_age = SESSION_TTL_SECONDS
        self.signer = TimestampSigner(settings.session_secret, salt=SIGNER_SALT)
        self.security_flags = "httponly; samesite=" + settings.SESSION_COOKIE_SAMESITE
        if settings.SESSION_COOKIE_SECURE:
            self.security_flags += "; secure"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        store: Optional[SessionStore] = getattr(scope["app"].state, "session_store", None)
        connection = HTTPConnection(scope)
        session = await self._load(store, connection.cookies.get(self.cookie_name))
        scope["session"] = session

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                await self._commit(session)
                cookie = self._cookie_header(session)
                if cookie:
                    headers = MutableHeaders(scope=message)
                    headers.append("Set-Cookie", cookie)
            await send(message)

        await self.app(scope, receive, send_wrapper)

    async def _load(self, store: Optional[SessionStore], cookie: Optional[str]) -> Session:
        session_id = self._unsign(cookie) if cookie else None
        if store is None:
            return Session(None, unavailable=True, had_cookie=bool(cookie))
        if session_id is None:
            return Session(store, had_cookie=bool(cookie))

        try:
            data = await store.get(session_id)
        except StoreUnavailable:
            logger.error("Session store unavailable while loading session")
            return Session(store, unavailable=True, had_cookie=True)

        if data is None:
            # unknown or expired id: never adopt an id the client chose
            return Session(store, had_cookie=True)
        return Session(store, session_id, data, had_cookie=True)

    def _unsign(self, cookie: str) -> Optional[str]:
        try:
            return self.signer.unsign(cookie, max_age=self.max_age).decode("utf-8")
        except BadSignature:
            logger.debug("Ignoring session cookie with a bad or expired signature")
            return None

    async def _commit(self, session: Session) -> None:
        if session.unavailable or session.destroyed:
            return
        try:
            if session.modified:
                await session.save()
            elif session.persisted:
                await session.store.touch(session.session_id)
        except StoreUnavailable:
            logger.error("Session could not be saved at end of request")

    def _cookie_header(self, session: Session) -> Optional[str]:
        if session.destroyed:
            if not session.had_cookie:
                return None
            return (
                f"{self.cookie_name}=null; path=/; "
                f"expires=Thu, 01 Jan 1970 00:00:00 GMT; {self.security_flags}"
            )
        if session.persisted:
            value = self.signer.sign(session.session_id).decode("utf-8")
            return f"{self.cookie_name}={value}; path=/; Max-Age={self.max_age}; {self.security_flags}"
        return None
