"""
Passes run on the incoming request before it is forwarded.

Each pass takes ``(incoming, sink, config)`` and amends the incoming view in place.
"""

import re
from typing import Callable, Tuple

from reverse_proxy.config.options import ProxyConfiguration
from reverse_proxy.forwarding.incoming import IncomingRequestView

_HOST_PORT = re.compile(r":(\d+)")


def get_port(incoming: IncomingRequestView) -> str:
    """Port from the ``Host`` header, else the default for the client connection."""
    host = incoming.headers.get("host")
    match = _HOST_PORT.search(host) if host else None
    if match:
        return match.group(1)
    return "443" if incoming.encrypted else "80"


def delete_length(incoming: IncomingRequestView, sink, config: ProxyConfiguration) -> None:
    """Bodiless DELETE/OPTIONS get an explicit zero length, some servers require it."""
    if incoming.method in ("DELETE", "OPTIONS") and not incoming.headers.get("content-length"):
        incoming.headers["content-length"] = "0"
        if "transfer-encoding" in incoming.headers:
            del incoming.headers["transfer-encoding"]


def timeout(incoming: IncomingRequestView, sink, config: ProxyConfiguration) -> None:
    if config.timeout:
        incoming.set_timeout(config.timeout)


def x_headers(incoming: IncomingRequestView, sink, config: ProxyConfiguration) -> None:
    """Append the client hop to ``x-forwarded-*`` when ``xfwd`` is on."""
    if not config.xfwd:
        return

    values = {
        "for": incoming.remote_address or "",
        "port": get_port(incoming),
        "proto": "https" if incoming.encrypted else "http",
    }
    for name, value in values.items():
        header = f"x-forwarded-{name}"
        previous = incoming.headers.get(header)
        incoming.headers[header] = f"{previous},{value}" if previous else value

    incoming.headers["x-forwarded-host"] = incoming.headers.get("host") or ""


IncomingPass = Callable[[IncomingRequestView, object, ProxyConfiguration], None]

INCOMING_PASSES: Tuple[IncomingPass, ...] = (delete_length, timeout, x_headers)
