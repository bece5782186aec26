from .rewriter import (
    RESPONSE_PASSES,
    ResponseDescriptor,
    remove_chunked,
    set_connection,
    set_redirect_host_rewrite,
    write_headers,
    write_status_code,
)

__all__ = [
    "RESPONSE_PASSES",
    "ResponseDescriptor",
    "remove_chunked",
    "set_connection",
    "set_redirect_host_rewrite",
    "write_headers",
    "write_status_code",
]
