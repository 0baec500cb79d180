from __future__ import annotations

import logging
import socket
import ssl
from contextlib import ExitStack
from typing import Any, Callable, Iterable, Mapping, NoReturn, Optional, Protocol

from panelhub.core.config import settings
from panelhub.core.logging import short_error
from panelhub.services.adapters.base import (
    AuthenticationError,
    BackendError,
    BackendUnavailableError,
    OperationCancelledError,
)
from panelhub.services.cancellation import current_scope
from panelhub.services.routeros.codec import (
    ProtocolError,
    Reply,
    Sentence,
    SentenceDecoder,
    build_request,
    challenge_response,
    encode_sentence,
)

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


class SocketLike(Protocol):
    def sendall(self, data: bytes) -> Any: ...

    def recv(self, size: int) -> bytes: ...

    def settimeout(self, value: Optional[float]) -> None: ...

    def shutdown(self, how: int) -> None: ...

    def close(self) -> None: ...


SocketFactory = Callable[[str, int, float], SocketLike]


def tcp_socket_factory(use_tls: bool = False, verify_ssl: bool = True) -> SocketFactory:
    def connect(host: str, port: int, timeout: float) -> SocketLike:
        sock = socket.create_connection((host, port), timeout=timeout)
        if not use_tls:
            return sock
        ctx = ssl.create_default_context()
        if not verify_ssl:
            # router certificates are usually self-signed
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        try:
            return ctx.wrap_socket(sock, server_hostname=host)
        except (ssl.SSLError, OSError):
            sock.close()
            raise

    return connect


class RouterOSConnection:
    """One authenticated API session: connect, login, talk, close.

    Use as a context manager; a cancel token bound to the calling scope
    shuts the socket down, which wakes a ``recv`` blocked in another thread.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        use_tls: bool = False,
        verify_ssl: bool = True,
        connect_timeout: float | None = None,
        read_timeout: float | None = None,
        socket_factory: SocketFactory | None = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.connect_timeout = connect_timeout or settings.ROUTEROS_CONNECT_TIMEOUT_SECONDS
        self.read_timeout = read_timeout or settings.ROUTEROS_READ_TIMEOUT_SECONDS
        self._factory = socket_factory or tcp_socket_factory(use_tls, verify_ssl)
        self._sock: SocketLike | None = None
        self._decoder = SentenceDecoder()
        self._stack = ExitStack()

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def __enter__(self) -> "RouterOSConnection":
        self._stack.enter_context(current_scope().on_cancel(self.close))
        try:
            self.open()
            self.login()
        except BaseException:
            self.close()
            self._stack.close()
            raise
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
        self._stack.close()

    def open(self) -> None:
        scope = current_scope()
        timeout = scope.timeout(self.connect_timeout)
        try:
            self._sock = self._factory(self.host, self.port, timeout)
        except OSError as e:
            self._raise_transport(e, "connect")
        self._decoder = SentenceDecoder()
        logger.debug("routeros connected host=%s port=%s", self.host, self.port)

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # already reset by the peer or never fully connected
            logger.debug("routeros shutdown failed host=%s err=%s", self.host, short_error(e))
        try:
            sock.close()
        except OSError as e:
            logger.debug("routeros close failed host=%s err=%s", self.host, short_error(e))

    def login(self) -> None:
        """Plain login first; fall back to the MD5 challenge when the router answers ``=ret=``."""
        reply = self._exchange(["/login", f"=name={self.username}", f"=password={self.password}"])
        self._check_login(reply)
        challenge = reply.done_attributes.get("ret")
        if challenge:
            try:
                response = challenge_response(self.password, challenge)
            except ProtocolError as e:
                raise AuthenticationError(f"RouterOS login: {e}") from e
            reply = self._exchange(["/login", f"=name={self.username}", f"=response={response}"])
            self._check_login(reply)
            if reply.done_attributes.get("ret"):
                raise AuthenticationError("RouterOS login: challenge repeated")

    @staticmethod
    def _check_login(reply: Reply) -> None:
        if reply.trap is not None:
            raise AuthenticationError(f"RouterOS login rejected: {reply.trap}")
        if not reply.done:
            raise AuthenticationError("RouterOS login: no !done")

    def talk(self, words: list[str]) -> list[dict[str, str]]:
        """Send one request sentence and return its ``!re`` rows."""
        return self.execute(words).rows

    def execute(self, words: list[str]) -> Reply:
        """Like ``talk`` but keeps the ``!done`` attributes (``ret`` of an add)."""
        reply = self._exchange(words)
        if reply.trap is not None:
            raise BackendError(reply.trap)
        return reply

    def command(
        self,
        path: str,
        attributes: Mapping[str, object] | None = None,
        queries: Mapping[str, object] | None = None,
        extra: Iterable[str] = (),
    ) -> list[dict[str, str]]:
        return self.talk(build_request(path, attributes, queries, extra))

    def _exchange(self, words: list[str]) -> Reply:
        if self._sock is None:
            raise BackendUnavailableError("routeros connection is not open")
        scope = current_scope()
        scope.check()
        try:
            self._sock.sendall(encode_sentence(words))
        except OSError as e:
            self._raise_transport(e, words[0])
        reply = Reply()
        while not reply.complete:
            for sentence in self._receive():
                reply.add(sentence)
                if reply.complete:
                    break
        if reply.fatal is not None:
            self.close()
            raise BackendUnavailableError(f"RouterOS fatal: {reply.fatal}")
        return reply

    def _receive(self) -> list[Sentence]:
        sock = self._sock
        if sock is None:
            if current_scope().cancelled:
                raise OperationCancelledError("routeros connection closed")
            raise BackendUnavailableError("routeros connection closed")
        try:
            sock.settimeout(current_scope().timeout(self.read_timeout))
            chunk = sock.recv(RECV_SIZE)
        except OSError as e:
            self._raise_transport(e, "recv")
        if not chunk:
            self.close()
            if current_scope().cancelled:
                raise OperationCancelledError("routeros recv cancelled")
            raise BackendUnavailableError("RouterOS closed the connection")
        try:
            return self._decoder.feed(chunk)
        except ProtocolError as e:
            self.close()
            raise BackendError(f"RouterOS protocol error: {e}") from e

    def _raise_transport(self, err: OSError, what: str) -> NoReturn:
        self.close()
        if current_scope().cancelled:
            raise OperationCancelledError(f"routeros {what} cancelled") from err
        if isinstance(err, TimeoutError):
            raise BackendUnavailableError(f"routeros {what} timed out host={self.host}") from err
        raise BackendUnavailableError(f"routeros {what} failed host={self.host}: {short_error(err)}") from err
