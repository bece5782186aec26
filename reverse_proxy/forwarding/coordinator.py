"""
Forwarding coordinator.

Runs one forwarding operation end to end: optional mirror request to ``forward``,
primary request to ``target``, response passes and the body relay. Events are emitted
through the ProxyEvents registry the facade owns. All state of the operation lives in
a ForwardingContext created per call.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

import httpx
from opentelemetry import trace

from reverse_proxy.common.socket_tuning import tune_socket
from reverse_proxy.config.endpoint import Endpoint
from reverse_proxy.config.options import ProxyConfiguration
from reverse_proxy.forwarding.body import BodyFanOut, BodySource, iterate_body
from reverse_proxy.forwarding.events import (
    ECONNRESET,
    END,
    ERROR,
    PROXY_REQ,
    PROXY_RES,
    START,
    ProxyEvents,
)
from reverse_proxy.forwarding.incoming import ClientAbortedError, IncomingRequestView
from reverse_proxy.outgoing.request_builder import build_outgoing
from reverse_proxy.response.rewriter import RESPONSE_PASSES, ResponseDescriptor
from reverse_proxy.transport.client import (
    build_request,
    iter_raw,
    open_client,
    send,
    upstream_socket,
)
from reverse_proxy.utils.exception_logging import (
    format_exception_message,
    is_connection_reset,
    log_exception_with_details,
)
from reverse_proxy.utils.traced_requests import traced_forward

logger = logging.getLogger("uvicorn.error")

ErrorCallback = Callable[[BaseException, Any, Any, Optional[Endpoint]], Any]

PRIMARY = 0
MIRROR = 1


class ForwardState(str, Enum):
    IDLE = "idle"
    MIRRORING = "mirroring"
    REQUESTING = "requesting"
    STREAMING_REQUEST_BODY = "streaming_request_body"
    AWAITING_RESPONSE = "awaiting_response"
    REWRITING_RESPONSE = "rewriting_response"
    STREAMING_RESPONSE_BODY = "streaming_response_body"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ForwardState.DONE, ForwardState.ABORTED, ForwardState.FAILED})


@dataclass
class ForwardingContext:
    incoming: IncomingRequestView
    sink: Any
    config: ProxyConfiguration
    callback: Optional[ErrorCallback] = None
    state: ForwardState = ForwardState.IDLE
    request: Optional[httpx.Request] = None
    response: Optional[httpx.Response] = None
    mirror_task: Optional[asyncio.Task] = None
    watcher: Optional[asyncio.Task] = None
    live_body: bool = False
    last_activity: float = 0.0

    def touch(self) -> None:
        """Record traffic on the client connection."""
        self.last_activity = asyncio.get_running_loop().time()

    def transition(self, state: ForwardState) -> None:
        if self.state in TERMINAL_STATES:
            return
        logger.debug(f"[Proxy] {self.incoming.method} {self.incoming.url}: {self.state.value} -> {state.value}")
        self.state = state


def _request_timeout(config: ProxyConfiguration, client: httpx.AsyncClient) -> httpx.Timeout:
    """``proxy_timeout`` when set, else the timeouts the client was built with."""
    if config.proxy_timeout is not None:
        return httpx.Timeout(config.proxy_timeout)
    return client.timeout


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        return "connection_failed"
    if isinstance(exc, ClientAbortedError):
        return "client_aborted"
    return type(exc).__name__


class ForwardingCoordinator:
    def __init__(self, events: ProxyEvents, tracer: Optional[trace.Tracer] = None):
        self.events = events
        self.tracer = tracer or trace.get_tracer(__name__)

    async def stream(
        self,
        incoming: IncomingRequestView,
        sink,
        config: ProxyConfiguration,
        callback: Optional[ErrorCallback] = None,
        buffer: Optional[BodySource] = None,
    ) -> ForwardingContext:
        """
        Forward ``incoming`` and relay the answer into ``sink``.

        Args:
            incoming: The client request view.
            sink: The client response sink.
            config: The proxy configuration.
            callback: Error callback ``(exc, incoming, sink, endpoint)`` used instead
                of the ``error`` event.
            buffer: Pre-captured request body used instead of the live one.

        Returns:
            The context of the finished operation.
        """
        context = ForwardingContext(incoming, sink, config, callback)
        await self.events.emit(START, incoming, sink, config.destination)

        source: Optional[AsyncIterable[bytes]] = None
        if buffer is not None:
            source = iterate_body(buffer)
        elif incoming.expects_body():
            source = incoming.stream()
            context.live_body = True

        fanout = None
        if source is not None and config.forward and config.target:
            fanout = BodyFanOut(source, 2)

        def body_for(index: int) -> Optional[AsyncIterable[bytes]]:
            if fanout is not None:
                return fanout.consume(index)
            return source

        def release(index: int) -> None:
            if fanout is not None:
                fanout.detach(index)

        try:
            if config.forward:
                context.transition(ForwardState.MIRRORING)
                mirror_done = asyncio.Event()
                context.mirror_task = asyncio.ensure_future(
                    self._mirror(context, body_for(MIRROR), release, mirror_done)
                )
                if not config.target:
                    # Respond once the body went out, the mirror answer is not awaited
                    body_sent = asyncio.ensure_future(mirror_done.wait())
                    await asyncio.wait(
                        {context.mirror_task, body_sent}, return_when=asyncio.FIRST_COMPLETED
                    )
                    body_sent.cancel()
                    await sink.end()
                    context.transition(ForwardState.DONE)
                    await context.mirror_task
                    return context

            try:
                await self._forward(context, body_for(PRIMARY))
            except Exception:
                release(PRIMARY)
                if context.mirror_task is not None:
                    await asyncio.gather(context.mirror_task, return_exceptions=True)
                raise
            finally:
                release(PRIMARY)

            if context.mirror_task is not None:
                await context.mirror_task
        finally:
            if context.watcher is not None:
                context.watcher.cancel()
        return context

    async def _mirror(
        self,
        context: ForwardingContext,
        body: Optional[AsyncIterable[bytes]],
        release: Callable[[int], None],
        body_sent: asyncio.Event,
    ) -> None:
        """Fire-and-forget copy of the request to ``forward``; the answer is discarded."""
        config = context.config
        outgoing = build_outgoing(config.ssl, config, context.incoming, "forward")
        client, owned = open_client(outgoing, config.proxy_timeout)
        timeout = _request_timeout(config, client)

        async def tracked(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
            try:
                async for chunk in chunks:
                    yield chunk
            finally:
                body_sent.set()

        if body is None:
            body_sent.set()
        try:
            request = build_request(
                outgoing, tracked(body) if body is not None else None, timeout
            )
            logger.debug(f"[Proxy-Mirror] {request.method} {context.incoming.url} -> {request.url}")
            response = await send(client, request)
            try:
                async for _ in iter_raw(response):
                    pass
            finally:
                await response.aclose()
            logger.debug(f"[Proxy-Mirror] {request.url} answered {response.status_code}")
        except Exception as exc:
            await self._handle_error(context, exc, config.forward, mirror=True)
        finally:
            body_sent.set()
            release(MIRROR)
            if owned:
                await client.aclose()

    async def _forward(self, context: ForwardingContext, body: Optional[AsyncIterable[bytes]]) -> None:
        config = context.config
        incoming = context.incoming
        outgoing = build_outgoing(config.ssl, config, incoming)
        client, owned = open_client(outgoing, config.proxy_timeout)
        timeout = _request_timeout(config, client)

        async def tracked(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
            async for chunk in chunks:
                context.touch()
                yield chunk
            context.transition(ForwardState.AWAITING_RESPONSE)

        with traced_forward(
            self.tracer,
            "proxy_request",
            outgoing.method,
            outgoing.url,
            f"[Proxy] {incoming.method} {incoming.url} -> {outgoing.url}",
        ) as span:
            try:
                context.transition(ForwardState.REQUESTING)
                request = build_request(
                    outgoing, tracked(body) if body is not None else None, timeout
                )
                context.request = request
                await self.events.emit(PROXY_REQ, request, incoming, context.sink, config)

                context.transition(
                    ForwardState.STREAMING_REQUEST_BODY
                    if body is not None
                    else ForwardState.AWAITING_RESPONSE
                )
                response = await self._guard(context, send(client, request))
                context.response = response
                span.set_attribute("proxy.status_code", response.status_code)

                await self._respond(context, response)
            except Exception as exc:
                span.set_attribute("proxy.error", _error_kind(exc))
                await self._handle_error(context, exc, config.target)
            finally:
                span.set_attribute("proxy.state", context.state.value)
                if context.response is not None:
                    await context.response.aclose()
                if owned:
                    await client.aclose()

    async def _respond(self, context: ForwardingContext, response: httpx.Response) -> None:
        incoming, sink, config = context.incoming, context.sink, context.config
        await self.events.emit(PROXY_RES, response, incoming, sink)

        sock = upstream_socket(response)
        if sock is not None:
            try:
                tune_socket(sock)
            except OSError as e:
                logger.debug(f"[Proxy] Could not tune upstream socket: {e}")

        context.transition(ForwardState.REWRITING_RESPONSE)
        upstream = ResponseDescriptor.from_httpx(response)
        if not sink.headers_sent:
            for response_pass in RESPONSE_PASSES:
                response_pass(incoming, sink, upstream, config)

        context.transition(ForwardState.STREAMING_RESPONSE_BODY)
        await self._guard(context, self._relay(context, response))
        await self.events.emit(END, incoming, sink, response)
        await sink.end()
        context.transition(ForwardState.DONE)
        logger.debug(
            f"[Proxy] {incoming.method} {incoming.url} answered {sink.status_code}"
            f" ({sink.get_header('content-type') or 'no content-type'})"
        )

    @staticmethod
    async def _relay(context: ForwardingContext, response: httpx.Response) -> None:
        async for chunk in iter_raw(response):
            await context.sink.write(chunk)
            context.touch()

    def _watcher(self, context: ForwardingContext) -> Optional[asyncio.Task]:
        """Disconnect watcher, started once nothing else reads from the client."""
        if context.watcher is None and (
            not context.live_body or context.incoming.body_complete
        ):
            context.watcher = asyncio.ensure_future(context.incoming.wait_disconnected())
        return context.watcher

    async def _guard(self, context: ForwardingContext, awaitable: Awaitable):
        """
        Await ``awaitable`` unless the client goes away first.

        The client is gone when it disconnects or, with an incoming ``timeout``, when
        its connection saw no traffic for that long (request body chunks and relayed
        response chunks count as traffic). Either way the work is cancelled, the
        incoming request is aborted and ClientAbortedError raised.
        """
        incoming = context.incoming
        if incoming.destroyed:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise ClientAbortedError("Client disconnected before the request was sent")

        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)
        context.touch()
        while True:
            watcher = self._watcher(context)
            waiters = {task} if watcher is None else {task, watcher}
            remaining = None
            if incoming.timeout:
                remaining = max(context.last_activity + incoming.timeout - loop.time(), 0)
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()
            if watcher is not None and watcher in done:
                reason = "Client disconnected before the response was relayed"
                break
            if incoming.timeout and loop.time() - context.last_activity >= incoming.timeout:
                reason = f"Client connection idle for {incoming.timeout}s"
                break

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        incoming.abort()
        raise ClientAbortedError(reason)

    async def _handle_error(
        self,
        context: ForwardingContext,
        exc: BaseException,
        endpoint: Optional[Endpoint],
        mirror: bool = False,
    ) -> None:
        prefix = "[Proxy-Mirror]" if mirror else "[Proxy]"
        incoming, sink = context.incoming, context.sink

        if incoming.destroyed and is_connection_reset(exc):
            if not mirror:
                context.transition(ForwardState.ABORTED)
            logger.info(f"{prefix} Client went away, aborted upstream request for {incoming.url}")
            await self.events.emit(ECONNRESET, exc, incoming, sink, endpoint)
            return

        if not mirror:
            context.transition(ForwardState.FAILED)
        log_exception_with_details(
            logger,
            f"{prefix} Forwarding {incoming.method} {incoming.url} failed:",
            exc,
            logging.WARNING,
        )
        if context.callback is not None:
            result = context.callback(exc, incoming, sink, endpoint)
            if inspect.isawaitable(result):
                await result
            return
        if not self.events.has_listeners(ERROR):
            logger.error(f"{prefix} Unhandled proxy error: {format_exception_message(exc)}")
        await self.events.emit(ERROR, exc, incoming, sink, endpoint)
