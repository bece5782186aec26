"""
Catch-all proxy route.

Every request that no other route claims is handed to the process-wide Proxy built
from the environment. The endpoint is a raw ASGI callable so the request body is
streamed from ``receive`` and the response written through ``send`` directly.
"""

import logging
from typing import List, Optional

import httpx
from starlette.routing import Route

from reverse_proxy.config.options import ProxyConfigurationError, configuration_from_env
from reverse_proxy.forwarding.incoming import IncomingRequestView
from reverse_proxy.forwarding.sink import AsgiResponseSink
from reverse_proxy.proxy import Proxy
from reverse_proxy.utils.exception_logging import format_exception_message

logger = logging.getLogger("uvicorn.error")

STALE_ENTITY_HEADERS = ("transfer-encoding", "content-encoding", "content-range", "etag")


async def respond_with_gateway_error(exc, incoming, sink, endpoint) -> None:
    """Default ``error`` listener: 504 for upstream timeouts, 502 for everything else."""
    target = endpoint.to_url() if endpoint is not None else "<unset>"
    if sink.headers_sent:
        # Too late for a status, leaving the response incomplete closes the connection
        logger.warning(
            f"[Proxy] Upstream {target} failed mid-response: {format_exception_message(exc)}"
        )
        return

    if isinstance(exc, httpx.TimeoutException):
        status, detail = 504, "Gateway timeout"
    elif isinstance(exc, httpx.ConnectError):
        status, detail = 502, "Bad gateway - cannot connect to target"
    else:
        status, detail = 502, "Bad gateway"
    logger.error(f"[Proxy] {detail} for {incoming.method} {incoming.url} -> {target}: {exc}")

    body = detail.encode("utf-8")
    # A listener may already have copied upstream headers that describe another body
    for name in STALE_ENTITY_HEADERS:
        sink.remove_header(name)
    sink.set_header("content-type", "text/plain; charset=utf-8")
    sink.set_header("content-length", str(len(body)))
    sink.write_head(status)
    await sink.end(body)


def build_proxy() -> Proxy:
    proxy = Proxy(configuration_from_env())
    proxy.on("error", respond_with_gateway_error)
    return proxy


class _ProxyApp:
    """Forwards any HTTP request to the configured upstream."""

    def __init__(self, proxy: Optional[Proxy] = None):
        self._proxy = proxy

    def get_proxy(self) -> Proxy:
        if self._proxy is None:
            self._proxy = build_proxy()
        return self._proxy

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return

        sink = AsgiResponseSink(send)
        try:
            proxy = self.get_proxy()
        except ProxyConfigurationError as exc:
            logger.error(f"[Proxy] Proxy is unavailable: {exc}")
            body = b"Proxy target is not configured"
            sink.set_header("content-type", "text/plain; charset=utf-8")
            sink.set_header("content-length", str(len(body)))
            sink.write_head(503)
            await sink.end(body)
            return

        incoming = IncomingRequestView.from_asgi(scope, receive)
        await proxy.proxy(incoming, sink)


proxy_app = _ProxyApp()


def get_proxy_routes(app: Optional[_ProxyApp] = None) -> List[Route]:
    """
    Routes for the FastAPI app's route list.

    They must be appended last and directly (not through an APIRouter) because the
    endpoint is a raw ASGI app and the path matches everything.
    """
    return [Route("/{path:path}", endpoint=app or proxy_app)]
