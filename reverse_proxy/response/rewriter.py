"""
Response passes.

Each pass takes ``(incoming, sink, upstream, config)`` and either adjusts the upstream
response headers in place or writes to the sink. They run once per response, in the
order of ``RESPONSE_PASSES``, after the upstream head arrived and before any body byte
is relayed. None of them raises on odd input: a value it cannot interpret is left as is.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx

from reverse_proxy.common.cookies import normalize_cookie_config, rewrite_cookie_domain

logger = logging.getLogger("uvicorn.error")

REDIRECT_STATUSES = frozenset({201, 301, 302, 307, 308})


@dataclass
class ResponseDescriptor:
    status_code: int
    headers: httpx.Headers
    reason_phrase: Optional[str] = None
    raw_headers: Optional[List[Tuple[str, str]]] = None
    stream: Optional[httpx.Response] = None

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "ResponseDescriptor":
        """Snapshot of the upstream head; the headers are a copy the passes may edit."""
        reason = response.extensions.get("reason_phrase", b"")
        if isinstance(reason, bytes):
            reason = reason.decode("latin-1")
        return cls(
            status_code=response.status_code,
            headers=httpx.Headers(response.headers),
            reason_phrase=reason or None,
            raw_headers=[
                (key.decode("latin-1"), value.decode("latin-1"))
                for key, value in response.headers.raw
            ],
            stream=response,
        )


def remove_chunked(incoming, sink, upstream: ResponseDescriptor, config=None) -> None:
    """HTTP/1.0 clients do not understand chunked framing."""
    if incoming.http_version == "1.0" and "transfer-encoding" in upstream.headers:
        del upstream.headers["transfer-encoding"]


def set_connection(incoming, sink, upstream: ResponseDescriptor, config=None) -> None:
    client_connection = incoming.headers.get("connection")
    if incoming.http_version == "1.0":
        upstream.headers["connection"] = client_connection or "close"
    elif incoming.http_version != "2.0" and not upstream.headers.get("connection"):
        upstream.headers["connection"] = client_connection or "keep-alive"


def _url_host(url: str) -> Optional[str]:
    try:
        return urlsplit(url).netloc.rpartition("@")[2].lower()
    except ValueError:
        return None


def set_redirect_host_rewrite(incoming, sink, upstream: ResponseDescriptor, config) -> None:
    """
    Point redirects to the upstream back at the proxy.

    Only ``Location`` headers on 201/301/302/307/308 responses whose host (port
    included) is the target's are rewritten, to ``host_rewrite`` or, with
    ``auto_rewrite``, to the client's ``Host`` header. ``protocol_rewrite``
    replaces the scheme.
    """
    if not (config.host_rewrite or config.auto_rewrite or config.protocol_rewrite):
        return
    location = upstream.headers.get("location")
    if not location or upstream.status_code not in REDIRECT_STATUSES:
        return

    target_host = (config.target.host or "").lower() if config.target else ""
    location_host = _url_host(location)
    if location_host is None or location_host != target_host:
        return

    parts = urlsplit(location)
    netloc = parts.netloc
    if config.host_rewrite:
        netloc = _replace_host(netloc, config.host_rewrite)
    elif config.auto_rewrite:
        netloc = _replace_host(netloc, incoming.headers.get("host") or "")
    scheme = parts.scheme
    if config.protocol_rewrite:
        scheme = config.protocol_rewrite.rstrip(":")

    upstream.headers["location"] = urlunsplit(
        (scheme, netloc, parts.path, parts.query, parts.fragment)
    )


def _replace_host(netloc: str, host: str) -> str:
    userinfo, at, _ = netloc.rpartition("@")
    return f"{userinfo}{at}{host}"


def write_headers(incoming, sink, upstream: ResponseDescriptor, config) -> None:
    cookie_config = normalize_cookie_config(config.cookie_domain_rewrite)

    raw_key_map: Optional[Dict[str, str]] = None
    if config.preserve_header_key_case and upstream.raw_headers is not None:
        raw_key_map = {}
        for key, _ in upstream.raw_headers:
            raw_key_map.setdefault(key.lower(), key)

    for key in upstream.headers.keys():
        if key == "set-cookie":
            value = upstream.headers.get_list(key)
            if cookie_config is not None:
                value = rewrite_cookie_domain(value, cookie_config)
        else:
            value = upstream.headers.get(key)
        if value is None:
            continue
        if raw_key_map is not None:
            key = raw_key_map.get(key, key)
        sink.set_header(key.strip(), value)


def write_status_code(incoming, sink, upstream: ResponseDescriptor, config=None) -> None:
    if upstream.reason_phrase:
        sink.write_head(upstream.status_code, upstream.reason_phrase)
    else:
        sink.write_head(upstream.status_code)


ResponsePass = Callable[..., None]

RESPONSE_PASSES: Tuple[ResponsePass, ...] = (
    remove_chunked,
    set_connection,
    set_redirect_host_rewrite,
    write_headers,
    write_status_code,
)
