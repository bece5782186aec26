"""
Builds the description of the upstream request for one incoming request.

The descriptor is plain data: the transport layer turns it into an ``httpx.Request``
and a client. Nothing here touches the network, so every rule (port defaults, header
overrides, the connection policy, path joining, the origin rewrite) is a pure function
of the configuration and the incoming request.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import httpx

from reverse_proxy.common.url_join import url_join
from reverse_proxy.config.endpoint import Endpoint, _strip_port, port_is_required
from reverse_proxy.config.options import ProxyConfiguration

UPGRADE_HEADER = re.compile(r"(^|,)\s*upgrade\s*($|,)", flags=re.IGNORECASE)

TLS_FIELDS = ("pfx", "key", "passphrase", "cert", "ca", "ciphers", "secure_protocol")

_BASE_ALIASES = {"secure_protocol": "secureProtocol"}

_TRANSPORT_SCHEMES = {"ws": "http", "wss": "https"}


@dataclass
class OutgoingRequestDescriptor:
    method: str = "GET"
    path: str = ""
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    scheme: str = "http"
    host: Optional[str] = None
    hostname: Optional[str] = None
    port: int = 80
    socket_path: Optional[str] = None
    pfx: Optional[str] = None
    key: Optional[str] = None
    passphrase: Optional[str] = None
    cert: Optional[str] = None
    ca: Optional[str] = None
    ciphers: Optional[str] = None
    secure_protocol: Optional[str] = None
    auth: Optional[str] = None
    reject_unauthorized: Optional[bool] = None
    agent: Optional[httpx.AsyncClient] = None
    local_address: Optional[str] = None

    @property
    def url(self) -> str:
        """Absolute upstream URL; the host is nominal when a unix socket is used."""
        host = self.hostname or _strip_port(self.host or "") or "localhost"
        if ":" in host:
            host = f"[{host}]"
        scheme = (self.scheme or "http").lower()
        scheme = _TRANSPORT_SCHEMES.get(scheme, scheme)
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{scheme}://{host}:{self.port}{path}"


def _path_and_query(url: str) -> str:
    """Path plus query of a request target, without scheme, authority or fragment."""
    url = url.split("#", 1)[0]
    if not url or url.startswith("/") or "://" not in url:
        return url
    _, _, rest = url.partition("://")
    slash = rest.find("/")
    query = rest.find("?")
    if slash == -1 or (query != -1 and query < slash):
        return "/" if query == -1 else f"/{rest[query:]}"
    return rest[slash:]


def _base_value(base: Mapping[str, Any], name: str):
    if name in base:
        return base[name]
    return base.get(_BASE_ALIASES.get(name, name))


def build_outgoing(
    base: Optional[Mapping[str, Any]],
    config: ProxyConfiguration,
    incoming,
    selector: str = "target",
) -> OutgoingRequestDescriptor:
    """
    Describe the upstream request for ``incoming``.

    Args:
        base: Fallback TLS material (the configuration's ``ssl`` mapping).
        config: The proxy configuration.
        incoming: The incoming request view (method, url, headers).
        selector: ``"target"`` or ``"forward"``, the endpoint to address.

    Returns:
        A fresh descriptor; ``incoming`` is not modified.
    """
    endpoint: Endpoint = getattr(config, selector) or Endpoint()
    base = base or {}

    outgoing = OutgoingRequestDescriptor(
        method=incoming.method,
        scheme=endpoint.scheme or "http",
        host=endpoint.host,
        hostname=endpoint.hostname,
        port=endpoint.resolved_port,
        socket_path=endpoint.socket_path,
    )
    for name in TLS_FIELDS:
        value = getattr(endpoint, name)
        setattr(outgoing, name, value if value is not None else _base_value(base, name))

    outgoing.headers = httpx.Headers(incoming.headers)
    for name, value in (config.headers or {}).items():
        outgoing.headers[name] = value

    if config.auth:
        outgoing.auth = config.auth
    if config.ca:
        outgoing.ca = config.ca
    if endpoint.is_ssl:
        outgoing.reject_unauthorized = True if config.secure is None else config.secure

    outgoing.agent = config.agent
    outgoing.local_address = config.local_address

    if outgoing.agent is None:
        connection = outgoing.headers.get("connection")
        if connection is None or not UPGRADE_HEADER.search(connection):
            outgoing.headers["connection"] = "close"

    target_path = (endpoint.path or "") if config.prepend_path else ""
    outgoing_path = incoming.url if config.to_proxy else _path_and_query(incoming.url or "")
    if config.ignore_path:
        outgoing_path = ""
    outgoing.path = url_join(target_path, outgoing_path or "")

    if config.change_origin:
        host = outgoing.host or ""
        if port_is_required(outgoing.port, endpoint.scheme) and ":" not in host:
            outgoing.headers["host"] = f"{host}:{outgoing.port}"
        else:
            outgoing.headers["host"] = host

    return outgoing
