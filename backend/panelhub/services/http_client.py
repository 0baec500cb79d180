from __future__ import annotations

import logging
import socket
import ssl
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator

import httpcore
import httpx

from panelhub.core.config import settings
from panelhub.core.logging import short_error

logger = logging.getLogger(__name__)


class InFlightStreams:
    """Which socket each thread is currently reading or writing.

    ``abort(ident)`` shuts that socket down, which wakes a ``recv`` blocked in
    the owning thread; closing the client alone does not.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[int, "AbortableStream"] = {}
        self._aborted: set[int] = set()

    @contextmanager
    def track(self) -> Iterator[Callable[[], None]]:
        """Scope one request of the calling thread; yields its abort callback."""
        ident = threading.get_ident()
        try:
            yield lambda: self.abort(ident)
        finally:
            with self._lock:
                self._aborted.discard(ident)
                self._active.pop(ident, None)

    def abort(self, ident: int) -> None:
        with self._lock:
            self._aborted.add(ident)
            stream = self._active.get(ident)
        if stream is not None:
            stream.shutdown()

    @contextmanager
    def io(self, stream: "AbortableStream", error: type[Exception]) -> Iterator[None]:
        ident = threading.get_ident()
        with self._lock:
            if ident in self._aborted:
                raise error("request aborted")
            self._active[ident] = stream
        try:
            yield
        finally:
            with self._lock:
                if self._active.get(ident) is stream:
                    del self._active[ident]


class AbortableStream(httpcore.NetworkStream):
    def __init__(self, inner: httpcore.NetworkStream, streams: InFlightStreams) -> None:
        self._inner = inner
        self._streams = streams

    def read(self, max_bytes: int, timeout: float | None = None) -> bytes:
        with self._streams.io(self, httpcore.ReadError):
            return self._inner.read(max_bytes, timeout)

    def write(self, buffer: bytes, timeout: float | None = None) -> None:
        with self._streams.io(self, httpcore.WriteError):
            self._inner.write(buffer, timeout)

    def close(self) -> None:
        self._inner.close()

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: str | None = None,
        timeout: float | None = None,
    ) -> httpcore.NetworkStream:
        with self._streams.io(self, httpcore.ConnectError):
            return AbortableStream(self._inner.start_tls(ssl_context, server_hostname, timeout), self._streams)

    def get_extra_info(self, info: str) -> Any:
        return self._inner.get_extra_info(info)

    def shutdown(self) -> None:
        sock = self._inner.get_extra_info("socket")
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("socket shutdown failed err=%s", short_error(e))


class AbortableBackend(httpcore.NetworkBackend):
    def __init__(self, streams: InFlightStreams) -> None:
        self._inner = httpcore.SyncBackend()
        self._streams = streams

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.NetworkStream:
        stream = self._inner.connect_tcp(
            host, port, timeout=timeout, local_address=local_address, socket_options=socket_options
        )
        return AbortableStream(stream, self._streams)

    def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.NetworkStream:
        stream = self._inner.connect_unix_socket(path, timeout=timeout, socket_options=socket_options)
        return AbortableStream(stream, self._streams)

    def sleep(self, seconds: float) -> None:
        self._inner.sleep(seconds)


class AbortableTransport(httpx.HTTPTransport):
    """Plain HTTP transport whose in-flight socket can be shut down per thread."""

    def __init__(self, verify: bool = True, limits: httpx.Limits | None = None) -> None:
        limits = limits or httpx.Limits(max_connections=100, max_keepalive_connections=20, keepalive_expiry=5.0)
        super().__init__(verify=verify, limits=limits)
        self.streams = InFlightStreams()
        self._pool = httpcore.ConnectionPool(
            ssl_context=httpx.create_ssl_context(verify=verify),
            max_connections=limits.max_connections,
            max_keepalive_connections=limits.max_keepalive_connections,
            keepalive_expiry=limits.keepalive_expiry,
            network_backend=AbortableBackend(self.streams),
        )


def build_client(
    base_url: str = "",
    verify: bool | None = None,
    timeout: float | None = None,
    connect_timeout: float | None = None,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    verify = settings.PANEL_TLS_VERIFY if verify is None else verify
    return httpx.Client(
        base_url=base_url,
        timeout=httpx.Timeout(
            timeout or settings.HTTP_TIMEOUT_SECONDS,
            connect=connect_timeout or settings.HTTP_CONNECT_TIMEOUT_SECONDS,
        ),
        verify=verify,
        headers={"User-Agent": f"{settings.APP_NAME}/1.0", "Accept": "application/json"},
        transport=transport or AbortableTransport(verify=verify),
    )
