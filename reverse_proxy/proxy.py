import logging
from typing import Any, Mapping, Optional, Union

from opentelemetry import trace

from reverse_proxy.config.options import ProxyConfiguration
from reverse_proxy.forwarding.body import BodySource
from reverse_proxy.forwarding.coordinator import (
    ErrorCallback,
    ForwardingContext,
    ForwardingCoordinator,
)
from reverse_proxy.forwarding.events import ProxyEvents
from reverse_proxy.forwarding.incoming import IncomingRequestView
from reverse_proxy.incoming_passes import INCOMING_PASSES

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)


class Proxy:
    """
    Reverse proxy bound to one configuration.

    Usage:
        proxy = Proxy(target="http://backend:8080", change_origin=True)
        proxy.events.on("error", on_error)
        await proxy.proxy(incoming, sink)

    The configuration is validated at construction and shared, read-only, by every
    request; everything else lives per request.
    """

    def __init__(
        self,
        options: Union[ProxyConfiguration, Mapping[str, Any], None] = None,
        **overrides: Any,
    ):
        if isinstance(options, ProxyConfiguration) and not overrides:
            self.config = options
        else:
            self.config = ProxyConfiguration.build(options, **overrides)
        self.events = ProxyEvents()
        self.coordinator = ForwardingCoordinator(self.events, tracer)
        logger.info(f"[Proxy] Configured: {self.config.describe()}")

    def on(self, event: str, handler):
        return self.events.on(event, handler)

    def off(self, event: str, handler) -> None:
        self.events.off(event, handler)

    async def proxy(
        self,
        incoming: IncomingRequestView,
        sink,
        callback: Optional[ErrorCallback] = None,
        buffer: Optional[BodySource] = None,
    ) -> ForwardingContext:
        """
        Forward one request.

        Args:
            incoming: The client request view.
            sink: Where the upstream response is written.
            callback: ``(exc, incoming, sink, endpoint)``, handles errors of this call
                instead of the ``error`` event.
            buffer: Request body to send instead of the live one.
        """
        for incoming_pass in INCOMING_PASSES:
            incoming_pass(incoming, sink, self.config)
        return await self.coordinator.stream(incoming, sink, self.config, callback, buffer)
