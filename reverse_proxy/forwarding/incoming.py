"""
Inbound request view over an ASGI connection.

The view exposes what the forwarding pipeline needs from the client side: the request
line, a per-request copy of the headers (the incoming passes amend it), the client
address, the body as an async stream and the client's liveness. Besides ``from_asgi``
it can be built directly with an explicit ``body`` for programmatic use.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from reverse_proxy.forwarding.body import BodySource, iterate_body

logger = logging.getLogger("uvicorn.error")

Receive = Callable[[], Awaitable[Dict[str, Any]]]

_HTTP_VERSIONS = {"1": "1.0", "1.0": "1.0", "1.1": "1.1", "2": "2.0", "2.0": "2.0"}


class ClientAbortedError(ConnectionResetError):
    """The client went away (disconnect or idle timeout) while the request was in flight."""


def normalize_http_version(version: Optional[str]) -> str:
    return _HTTP_VERSIONS.get(str(version or "1.1"), str(version))


def _raw_url(scope: Dict[str, Any]) -> str:
    raw_path = scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1")
    else:
        path = quote(scope.get("path") or "/", safe="/%:@!$&'()*+,;=~")
    query = scope.get("query_string") or b""
    if query:
        path = f"{path}?{query.decode('latin-1')}"
    return path


class IncomingRequestView:
    def __init__(
        self,
        method: str,
        url: str,
        headers=None,
        http_version: str = "1.1",
        remote_address: Optional[str] = None,
        remote_port: Optional[int] = None,
        encrypted: bool = False,
        body: Optional[BodySource] = None,
        receive: Optional[Receive] = None,
    ):
        self.method = method
        self.url = url
        self.headers = httpx.Headers(headers or {})
        self.http_version = normalize_http_version(http_version)
        self.remote_address = remote_address
        self.remote_port = remote_port
        self.encrypted = encrypted
        self.timeout: Optional[float] = None
        self.destroyed = False
        self._body = body
        self._receive = receive
        self._body_complete = receive is None
        self._disconnected = asyncio.Event()

    @classmethod
    def from_asgi(cls, scope: Dict[str, Any], receive: Receive) -> "IncomingRequestView":
        headers = [
            (key.decode("latin-1"), value.decode("latin-1"))
            for key, value in scope.get("headers", [])
        ]
        client = scope.get("client") or (None, None)
        return cls(
            method=scope.get("method", "GET"),
            url=_raw_url(scope),
            headers=headers,
            http_version=scope.get("http_version", "1.1"),
            remote_address=client[0],
            remote_port=client[1],
            encrypted=scope.get("scheme") in ("https", "wss"),
            receive=receive,
        )

    @property
    def body_complete(self) -> bool:
        """True once the live body was read to the end (always true without ``receive``)."""
        return self._body_complete

    def set_timeout(self, seconds: Optional[float]) -> None:
        """Idle limit for the client connection in seconds, ``None`` disables it."""
        self.timeout = seconds

    def abort(self) -> None:
        """Mark the client as gone."""
        self.destroyed = True
        self._disconnected.set()

    async def _next_message(self) -> Dict[str, Any]:
        if self.timeout:
            try:
                return await asyncio.wait_for(self._receive(), self.timeout)
            except asyncio.TimeoutError:
                self.abort()
                raise ClientAbortedError(
                    f"Client sent no data for {self.timeout}s"
                ) from None
        return await self._receive()

    async def stream(self) -> AsyncIterator[bytes]:
        """The request body, chunk by chunk; raises ClientAbortedError if the client leaves."""
        if self._receive is None:
            async for chunk in iterate_body(self._body):
                yield chunk
            return

        while not self._body_complete:
            message = await self._next_message()
            if message["type"] == "http.disconnect":
                self.abort()
                raise ClientAbortedError("Client disconnected while sending the body")
            if not message.get("more_body", False):
                self._body_complete = True
            chunk = message.get("body", b"")
            if chunk:
                yield chunk

    async def wait_disconnected(self) -> None:
        """
        Return once the client has disconnected.

        Reads from ``receive``, so it must only run once nothing else consumes the
        body. Unread body messages are discarded.
        """
        if self._receive is None:
            await self._disconnected.wait()
            return
        while not self.destroyed:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                logger.debug("[Proxy] Client disconnected")
                self.abort()

    def expects_body(self) -> bool:
        """Whether the client announced a request body."""
        if self._receive is None:
            return self._body is not None
        if "transfer-encoding" in self.headers:
            return True
        length = self.headers.get("content-length")
        if length is not None:
            return length.strip() not in ("", "0")
        return self.http_version == "2.0" and self.method in ("POST", "PUT", "PATCH")
