"""
Lifecycle events of a forwarding operation.

``start``      (incoming, sink, target)
``proxyReq``   (request, incoming, sink, config)      before the upstream request is sent
``proxyRes``   (response, incoming, sink)             upstream head received
``econnreset`` (exc, incoming, sink, target)          client went away, upstream aborted
``end``        (incoming, sink, response)             response relayed
``error``      (exc, incoming, sink, target)

Handlers may be plain functions or coroutine functions; they run in subscription
order and are awaited one after the other.
"""

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

logger = logging.getLogger("uvicorn.error")

START = "start"
PROXY_REQ = "proxyReq"
PROXY_RES = "proxyRes"
ECONNRESET = "econnreset"
END = "end"
ERROR = "error"

EVENT_NAMES = (START, PROXY_REQ, PROXY_RES, ECONNRESET, END, ERROR)

Handler = Callable[..., Any]


class ProxyEvents:
    def __init__(self):
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Handler:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown proxy event '{event}', expected one of {EVENT_NAMES}")
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listeners(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, []))

    def has_listeners(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    async def emit(self, event: str, *args: Any) -> bool:
        """
        Call every handler of ``event`` with ``args``.

        An ``error`` without handlers re-raises the exception passed as first
        argument. Returns whether any handler ran.
        """
        handlers = self.listeners(event)
        if not handlers:
            if event == ERROR and args and isinstance(args[0], BaseException):
                raise args[0]
            return False
        for handler in handlers:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        return True
