"""
httpx side of the forwarding pipeline.

Turns an OutgoingRequestDescriptor into an ``httpx.Request`` and picks the client that
sends it: the configured ``agent`` (shared, pooled, left open) or a one-shot client
with keep-alive disabled that the caller closes once the response was relayed.
"""

import base64
import logging
import os
import ssl
import tempfile
from contextlib import contextmanager
from typing import AsyncIterable, AsyncIterator, Iterator, Optional, Tuple, Union

import httpx

from reverse_proxy.config.endpoint import is_ssl_scheme
from reverse_proxy.outgoing.request_builder import OutgoingRequestDescriptor

logger = logging.getLogger("uvicorn.error")

_PROTOCOL_PINS = {
    "TLSv1_method": ssl.TLSVersion.TLSv1,
    "TLSv1_1_method": ssl.TLSVersion.TLSv1_1,
    "TLSv1_2_method": ssl.TLSVersion.TLSv1_2,
    "TLSv1_3_method": ssl.TLSVersion.TLSv1_3,
}
_UNPINNED_PROTOCOLS = {"SSLv23_method", "TLS_method", "TLS_client_method"}


def _is_pem(value: str) -> bool:
    return "-----BEGIN" in value


@contextmanager
def _pem_path(value: str) -> Iterator[str]:
    """A file path for ``value``: the value itself, or a temp file holding PEM text."""
    if not _is_pem(value):
        yield value
        return
    handle, path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(handle, "w") as pem_file:
            pem_file.write(value)
        yield path
    finally:
        os.unlink(path)


def build_ssl_context(outgoing: OutgoingRequestDescriptor) -> ssl.SSLContext:
    """
    TLS context from the descriptor's material.

    ``ca`` and ``cert``/``key`` may be file paths or PEM text. ``secure_protocol``
    takes OpenSSL method names (``TLSv1_2_method``) and pins the protocol version.
    """
    if outgoing.ca:
        if _is_pem(outgoing.ca):
            context = ssl.create_default_context(cadata=outgoing.ca)
        else:
            context = ssl.create_default_context(cafile=outgoing.ca)
    else:
        context = ssl.create_default_context()

    if outgoing.reject_unauthorized is False:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    if outgoing.cert:
        with _pem_path(outgoing.cert) as cert_path:
            if outgoing.key:
                with _pem_path(outgoing.key) as key_path:
                    context.load_cert_chain(cert_path, key_path, password=outgoing.passphrase)
            else:
                context.load_cert_chain(cert_path, password=outgoing.passphrase)
    if outgoing.pfx:
        logger.warning("[Proxy] PKCS#12 'pfx' material is not supported, use cert/key instead")

    if outgoing.ciphers:
        context.set_ciphers(outgoing.ciphers)

    if outgoing.secure_protocol:
        version = _PROTOCOL_PINS.get(outgoing.secure_protocol)
        if version is not None:
            context.minimum_version = version
            context.maximum_version = version
        elif outgoing.secure_protocol not in _UNPINNED_PROTOCOLS:
            logger.warning(
                f"[Proxy] Unknown secure protocol '{outgoing.secure_protocol}', not pinning"
            )
    return context


def build_timeout(seconds: Union[float, httpx.Timeout, None]) -> httpx.Timeout:
    return httpx.Timeout(seconds)


def open_client(
    outgoing: OutgoingRequestDescriptor, timeout: Optional[float] = None
) -> Tuple[httpx.AsyncClient, bool]:
    """
    Client for sending ``outgoing``.

    Returns:
        ``(client, owned)``; an owned client must be closed by the caller.
    """
    if outgoing.agent is not None:
        return outgoing.agent, False

    verify: Union[ssl.SSLContext, bool] = True
    if is_ssl_scheme(outgoing.scheme):
        verify = build_ssl_context(outgoing)

    transport = httpx.AsyncHTTPTransport(
        verify=verify,
        uds=outgoing.socket_path,
        local_address=outgoing.local_address,
        limits=httpx.Limits(max_keepalive_connections=0),
    )
    client = httpx.AsyncClient(
        transport=transport,
        timeout=build_timeout(timeout),
        follow_redirects=False,
        trust_env=False,
    )
    return client, True


def build_request(
    outgoing: OutgoingRequestDescriptor,
    content: Optional[AsyncIterable[bytes]] = None,
    timeout: Union[float, httpx.Timeout, None] = None,
) -> httpx.Request:
    """
    The upstream request, headers exactly as built (no client default headers).

    ``auth`` becomes a basic ``Authorization`` header unless the request already
    carries one. Without ``timeout`` the request carries no timeout extension and
    the transport runs without limits; callers pass the client's own timeout to keep it.
    """
    headers = httpx.Headers(outgoing.headers)
    if outgoing.auth and "authorization" not in headers:
        token = base64.b64encode(outgoing.auth.encode("utf-8")).decode("ascii")
        headers["authorization"] = f"Basic {token}"

    extensions = {}
    if timeout is not None:
        extensions["timeout"] = build_timeout(timeout).as_dict()
    return httpx.Request(
        outgoing.method,
        outgoing.url,
        headers=headers,
        content=content,
        extensions=extensions,
    )


async def send(client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
    """Send without reading the body; the caller streams and closes the response."""
    return await client.send(request, stream=True, follow_redirects=False)


async def iter_raw(response: httpx.Response) -> AsyncIterator[bytes]:
    """
    Raw body chunks of ``response``, still content-encoded.

    A transport may hand back a response whose body is already in memory (a mock or
    caching transport); that body is yielded once instead of being streamed.
    """
    if response.is_stream_consumed:
        if response.content:
            yield response.content
        return
    async for chunk in response.aiter_raw():
        yield chunk


def upstream_socket(response: httpx.Response):
    """The raw socket behind ``response``, when the transport exposes it."""
    network_stream = response.extensions.get("network_stream")
    if network_stream is None:
        return None
    try:
        return network_stream.get_extra_info("socket")
    except (AttributeError, KeyError, OSError):
        return None
