from .client import build_request, build_ssl_context, iter_raw, open_client, send, upstream_socket

__all__ = ["build_request", "build_ssl_context", "iter_raw", "open_client", "send", "upstream_socket"]
