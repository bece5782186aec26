import logging
from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry.trace import Tracer

from reverse_proxy.utils import mask_url_credentials

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_forward(
    tracer: Tracer,
    operation: str,
    method: str,
    url: str,
    start_message: str,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span, set common attributes, and log a start message."""
    safe_url = mask_url_credentials(url)
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.method", method)
        span.set_attribute("proxy.target_url", safe_url)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        logger.debug(start_message)
        yield span
