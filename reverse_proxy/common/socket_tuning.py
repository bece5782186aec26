import logging
import socket

logger = logging.getLogger("uvicorn.error")

_TCP_FAMILIES = {socket.AF_INET, getattr(socket, "AF_INET6", socket.AF_INET)}


def tune_socket(sock):
    """
    Prepare an upstream socket for relaying a proxied exchange.

    Clears any idle timeout, disables Nagle's algorithm so small proxied writes
    go out immediately and turns on TCP keep-alive. Event loop sockets are
    already non-blocking and carry no timeout, so only blocking sockets with a
    timeout are touched for that part.

    Returns:
        The same socket, for chaining.
    """
    if sock.gettimeout():
        sock.settimeout(None)
    if sock.family in _TCP_FAMILIES:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    logger.debug(f"[Proxy] Tuned upstream socket fd={sock.fileno()}")
    return sock
