import logging
from typing import Optional, Dict
from contextlib import contextmanager

from opentelemetry.trace import Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    method: str,
    raw_url: str,
    host: Optional[str],
    start_message: Optional[str] = None,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span, set common attributes, and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("proxy.method", method)
        span.set_attribute("proxy.raw_url", raw_url)
        if host:
            span.set_attribute("proxy.client_host", host)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        if start_message:
            logger.debug(start_message)
        yield span
