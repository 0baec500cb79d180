from __future__ import annotations

import abc
import threading
from contextlib import nullcontext
from typing import Any

import httpx

from panelhub.core.config import settings
from panelhub.core.logging import short_error
from panelhub.schemas.panel import PanelConfig
from panelhub.services.adapters.base import (
    AuthenticationError,
    BackendError,
    BackendUnavailableError,
    ConfigurationError,
    DuplicateUserError,
    OperationCancelledError,
    PanelAdapter,
    UserNotFoundError,
)
from panelhub.services.adapters.session import NEVER, AuthSession, SessionState
from panelhub.services.cancellation import current_scope
from panelhub.services.http_client import AbortableTransport, InFlightStreams, build_client
from panelhub.services.session_store import SessionStore

AUTH_FAILURE_CODES = (401, 403)
UNAVAILABLE_CODES = (502, 503, 504)


class HttpPanelAdapter(PanelAdapter):
    """Shared HTTP/JSON plumbing for token based panels.

    Session lifecycle per instance:
    unauthenticated -> authenticating -> authenticated (-> expired -> authenticating).
    Authentication is lazy and serialized by ``_auth_lock``; threads arriving
    while a login is in flight block on the lock and reuse its result.
    A 401/403 triggers exactly one re-authentication and one retry.
    """

    def __init__(
        self,
        transport: httpx.BaseTransport | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        super().__init__()
        self._transport = transport
        self._session_store = session_store
        self._client: httpx.Client | None = None
        self._streams: InFlightStreams | None = None
        self._client_lock = threading.Lock()
        self._auth_lock = threading.Lock()
        self._session: AuthSession | None = None
        self.state = SessionState.UNAUTHENTICATED

    # configuration

    def _validate(self, config: PanelConfig) -> None:
        if not config.base_url:
            raise ConfigurationError(f"{self.panel_type.value} panel {config.id} requires base_url")

    def _on_configure(self, config: PanelConfig) -> None:
        self._drop_client()
        with self._auth_lock:
            self._session = None
            self.state = SessionState.UNAUTHENTICATED

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def timeout(self) -> float:
        return float(self.config.timeout or settings.HTTP_TIMEOUT_SECONDS)

    @property
    def connect_timeout(self) -> float:
        return float(self.config.connect_timeout or settings.HTTP_CONNECT_TIMEOUT_SECONDS)

    def session_ttl(self) -> float | None:
        return float(self.config.session_ttl or settings.SESSION_TTL_SECONDS)

    def close(self) -> None:
        self._drop_client()

    def _http(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                transport = self._transport or AbortableTransport(verify=self.config.verify_ssl)
                self._streams = transport.streams if isinstance(transport, AbortableTransport) else None
                self._client = build_client(
                    base_url=self.base_url,
                    verify=self.config.verify_ssl,
                    timeout=self.timeout,
                    connect_timeout=self.connect_timeout,
                    transport=transport,
                )
            return self._client

    def _drop_client(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()

    # session

    @abc.abstractmethod
    def _authenticate(self) -> AuthSession:
        """Log in against the backend; raise AuthenticationError on rejection."""

    @abc.abstractmethod
    def _auth_headers(self, session: AuthSession) -> dict[str, str]: ...

    def _ensure_session(self) -> AuthSession:
        session = self._session
        if session is not None and session.is_valid():
            return session
        with self._auth_lock:
            session = self._session
            if session is not None and session.is_valid():
                return session
            if session is not None:
                self.state = SessionState.EXPIRED
            restored = self._restore_session()
            if restored is not None:
                self._session = restored
                self.state = SessionState.AUTHENTICATED
                return restored
            self.state = SessionState.AUTHENTICATING
            try:
                session = self._authenticate()
            except Exception:
                self._session = None
                self.state = SessionState.UNAUTHENTICATED
                raise
            self._session = session
            self.state = SessionState.AUTHENTICATED
            self._persist_session(session)
            self.logger.info("authenticated panel_id=%s", self.panel_id)
            return session

    def _invalidate(self, stale: AuthSession | None) -> None:
        with self._auth_lock:
            if self._session is stale:
                self._session = None
                self.state = SessionState.UNAUTHENTICATED

    def _restore_session(self) -> AuthSession | None:
        if self._session_store is None or self._session is not None:
            return None
        restored = AuthSession.from_meta(self._session_store.load_session_meta(self.panel_id))
        if restored is not None and restored.is_valid():
            self.logger.debug("session restored panel_id=%s", self.panel_id)
            return restored
        return None

    def _persist_session(self, session: AuthSession) -> None:
        if self._session_store is None or session.expires_at == NEVER:
            return
        self._session_store.save_session_meta(self.panel_id, session.to_meta())

    # transport

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        scope = current_scope()
        read_timeout = scope.timeout(self.timeout)
        timeout = httpx.Timeout(read_timeout, connect=min(self.connect_timeout, read_timeout))
        client = self._http()
        streams = self._streams
        # injected transports cannot be aborted per request; closing the client is the fallback
        guard = streams.track() if streams is not None else nullcontext(self._drop_client)
        try:
            with guard as abort, scope.on_cancel(abort):
                return client.request(method, path, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            if scope.cancelled:
                raise OperationCancelledError(f"{method} {path} cancelled") from e
            raise BackendUnavailableError(f"timeout {method} {path}") from e
        except httpx.TransportError as e:
            if scope.cancelled:
                raise OperationCancelledError(f"{method} {path} cancelled") from e
            raise BackendUnavailableError(f"{method} {path}: {short_error(e)}") from e
        except RuntimeError as e:
            # client closed underneath us by a concurrent cancel()
            if scope.cancelled:
                raise OperationCancelledError(f"{method} {path} cancelled") from e
            raise BackendUnavailableError(f"{method} {path}: {short_error(e)}") from e

    def _request(
        self,
        method: str,
        path: str,
        *,
        user: str | None = None,
        raw: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Authenticated request returning decoded JSON (or text when ``raw``).

        ``user`` names the account a route addresses: a 404 then becomes
        UserNotFoundError and a 409 DuplicateUserError.
        """
        extra_headers = kwargs.pop("headers", None) or {}
        session = self._ensure_session()
        r = self._send(method, path, headers={**self._auth_headers(session), **extra_headers}, **kwargs)
        if r.status_code in AUTH_FAILURE_CODES:
            self.logger.info(
                "auth rejected, re-authenticating panel_id=%s status=%s %s %s",
                self.panel_id, r.status_code, method, path,
            )
            self._invalidate(session)
            session = self._ensure_session()
            r = self._send(method, path, headers={**self._auth_headers(session), **extra_headers}, **kwargs)
            if r.status_code in AUTH_FAILURE_CODES:
                self._invalidate(session)
                raise AuthenticationError(
                    f"HTTP {r.status_code} {method} {path} after re-authentication: {self._error_message(r)}"
                )
        self._raise_for_status(r, method, path, user)
        if raw:
            return r.text
        return self._decode(r, method, path)

    def _raise_for_status(self, r: httpx.Response, method: str, path: str, user: str | None = None) -> None:
        if r.status_code < 400:
            return
        message = self._error_message(r)
        if user is not None and r.status_code == 404:
            raise UserNotFoundError(user, message)
        if user is not None and r.status_code == 409:
            raise DuplicateUserError(user, message)
        if r.status_code in UNAVAILABLE_CODES:
            raise BackendUnavailableError(f"HTTP {r.status_code} {method} {path}: {message}")
        raise BackendError(message, status_code=r.status_code)

    @staticmethod
    def _error_message(r: httpx.Response) -> str:
        try:
            js = r.json()
        except ValueError:
            return r.text[:300]
        if isinstance(js, dict):
            for key in ("message", "msg", "detail", "error"):
                val = js.get(key)
                if val:
                    return val if isinstance(val, str) else str(val)
        return r.text[:300]

    @staticmethod
    def _decode(r: httpx.Response, method: str, path: str) -> Any:
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise BackendError(f"invalid JSON from {method} {path}: {r.text[:120]}", status_code=r.status_code) from e
