from .coordinator import ForwardingContext, ForwardingCoordinator, ForwardState
from .events import ProxyEvents
from .incoming import ClientAbortedError, IncomingRequestView
from .sink import AsgiResponseSink

__all__ = [
    "AsgiResponseSink",
    "ClientAbortedError",
    "ForwardState",
    "ForwardingContext",
    "ForwardingCoordinator",
    "IncomingRequestView",
    "ProxyEvents",
]
