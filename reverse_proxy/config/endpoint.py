"""
Upstream endpoint model.

An endpoint is either parsed from a URL string (``"https://backend:8443/api"``) or
given in decomposed form as a mapping. Mappings accept the snake_case field names
as well as the camelCase names of the configuration surface (``socketPath``,
``secureProtocol``) and ``protocol`` for the scheme, with or without the colon.
"""

import re
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlsplit

IS_SSL = re.compile(r"^(https|wss)", flags=re.IGNORECASE)

_IMPLICIT_PORTS = {
    "http": 80,
    "ws": 80,
    "https": 443,
    "wss": 443,
    "ftp": 21,
    "gopher": 70,
}

_MAPPING_ALIASES = {
    "protocol": "scheme",
    "socketPath": "socket_path",
    "secureProtocol": "secure_protocol",
}


def normalize_scheme(scheme: Optional[str]) -> Optional[str]:
    """``"https:"`` and ``"https"`` are the same scheme."""
    if not scheme:
        return None
    return scheme.rstrip(":") or None


def is_ssl_scheme(scheme: Optional[str]) -> bool:
    return bool(scheme and IS_SSL.match(scheme))


def port_is_required(port: Any, scheme: Optional[str]) -> bool:
    """
    Whether ``port`` has to be spelled out for ``scheme``.

    False for the scheme's implicit default (80 for http, 443 for https, ...)
    and for a missing or zero port.
    """
    try:
        port = int(port)
    except (TypeError, ValueError):
        return False
    if not port:
        return False

    scheme = (normalize_scheme(scheme) or "").lower()
    if scheme == "file":
        return False
    if scheme in _IMPLICIT_PORTS:
        return port != _IMPLICIT_PORTS[scheme]
    return True


def _strip_port(host: str) -> str:
    if host.startswith("["):
        return host[1 : host.index("]")] if "]" in host else host
    name, sep, port = host.rpartition(":")
    if sep and port.isdigit():
        return name
    return host


@dataclass(frozen=True)
class Endpoint:
    scheme: Optional[str] = None
    host: Optional[str] = None
    hostname: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None
    socket_path: Optional[str] = None
    pfx: Optional[str] = None
    key: Optional[str] = None
    passphrase: Optional[str] = None
    cert: Optional[str] = None
    ca: Optional[str] = None
    ciphers: Optional[str] = None
    secure_protocol: Optional[str] = None

    @property
    def is_ssl(self) -> bool:
        return is_ssl_scheme(self.scheme)

    @property
    def is_usable(self) -> bool:
        return bool(self.host or self.hostname or self.socket_path)

    @property
    def resolved_port(self) -> int:
        if self.port:
            return self.port
        return 443 if self.is_ssl else 80

    def to_url(self) -> str:
        if self.socket_path and not (self.host or self.hostname):
            return f"unix:{self.socket_path}:{self.path or '/'}"
        host = self.host or self.hostname or ""
        if self.port and ":" not in host:
            host = f"{host}:{self.port}"
        return f"{self.scheme or 'http'}://{host}{self.path or ''}"


def _from_url(value: str) -> Endpoint:
    parts = urlsplit(value)
    host = parts.netloc.rpartition("@")[2].lower() or None
    path = parts.path or ("/" if parts.netloc else "")
    if parts.query:
        path = f"{path}?{parts.query}"
    return Endpoint(
        scheme=normalize_scheme(parts.scheme),
        host=host,
        hostname=parts.hostname,
        port=parts.port,
        path=path or None,
    )


def _from_mapping(value: Mapping[str, Any]) -> Endpoint:
    known = {f.name for f in fields(Endpoint)}
    kwargs = {}
    for name, item in value.items():
        name = _MAPPING_ALIASES.get(name, name)
        if name in known and item is not None:
            kwargs[name] = item

    if "scheme" in kwargs:
        kwargs["scheme"] = normalize_scheme(str(kwargs["scheme"]))
    if "port" in kwargs:
        kwargs["port"] = int(kwargs["port"])
    if "host" in kwargs and "hostname" not in kwargs:
        kwargs["hostname"] = _strip_port(str(kwargs["host"]))
    if "hostname" in kwargs and "host" not in kwargs:
        kwargs["host"] = kwargs["hostname"]
    return Endpoint(**kwargs)


def parse_endpoint(value: Union[str, Mapping[str, Any], Endpoint, None]) -> Optional[Endpoint]:
    """
    Build an Endpoint from a URL string, a decomposed mapping or an Endpoint.

    Raises:
        ValueError: If the URL or one of its components (e.g. the port) is invalid.
        TypeError: For unsupported input types.
    """
    if value is None or isinstance(value, Endpoint):
        return value
    if isinstance(value, str):
        return _from_url(value)
    if isinstance(value, Mapping):
        return _from_mapping(value)
    raise TypeError(f"Unsupported endpoint type: {type(value).__name__}")
