"""Delivery tracing utilities."""

import uuid
from contextvars import ContextVar
from typing import Optional

import structlog

# Context variable holding the trace ID of the message being processed
trace_id_ctx: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


def generate_trace_id() -> str:
    """Generate a short trace ID."""
    return str(uuid.uuid4())[:8]


def get_trace_id() -> Optional[str]:
    """Get the current trace ID from context."""
    return trace_id_ctx.get()


def bind_delivery(delivery_tag: int, message_id: Optional[str] = None) -> str:
    """Bind a delivery to the logging context and return its trace ID."""
    trace_id = message_id or generate_trace_id()
    trace_id_ctx.set(trace_id)
    structlog.contextvars.bind_contextvars(trace_id=trace_id, delivery_tag=delivery_tag)
    return trace_id


def clear_delivery() -> None:
    """Clear the delivery from the logging context."""
    trace_id_ctx.set(None)
    structlog.contextvars.unbind_contextvars("trace_id", "delivery_tag")
