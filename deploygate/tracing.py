"""
Attempt Context Propagation

Binds the id of the deployment attempt being driven to the current asyncio
task so log records and adapter calls can be correlated without passing the
id through every function.

Usage:
    from deploygate.tracing import bind_attempt, get_attempt_id

    with bind_attempt(attempt.id):
        await machine.run()

    logger.info("Polling", extra=attempt_context())
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Optional

# Each asyncio task gets a copy of the context, so attempts never see each other's id
_attempt_id_var: ContextVar[Optional[str]] = ContextVar("attempt_id", default=None)
_span_id_var: ContextVar[Optional[str]] = ContextVar("span_id", default=None)

# Header names used when adapters call HTTP services
ATTEMPT_ID_HEADER = "X-Deploy-Attempt-ID"
SPAN_ID_HEADER = "X-Span-ID"


def generate_span_id() -> str:
    """Generate a short span id for a single adapter call"""
    return uuid.uuid4().hex[:16]


def get_attempt_id() -> Optional[str]:
    return _attempt_id_var.get()


@contextmanager
def bind_attempt(attempt_id: str):
    """Bind `attempt_id` for the duration of the block"""
    token = _attempt_id_var.set(attempt_id)
    try:
        yield attempt_id
    finally:
        _attempt_id_var.reset(token)


@contextmanager
def span():
    """Open a span for one outbound call"""
    token = _span_id_var.set(generate_span_id())
    try:
        yield _span_id_var.get()
    finally:
        _span_id_var.reset(token)


def attempt_context() -> Dict[str, Dict[str, str]]:
    """
    Get extra fields for structured logging.

    Usage:
        logger.info("Deploying", extra=attempt_context())
    """
    fields = {}
    attempt_id = _attempt_id_var.get()
    if attempt_id:
        fields["attempt_id"] = attempt_id
    span_id = _span_id_var.get()
    if span_id:
        fields["span_id"] = span_id
    return {"extra_fields": fields}


def outbound_headers() -> Dict[str, str]:
    """Headers to propagate the attempt id to HTTP collaborators"""
    headers = {}
    attempt_id = _attempt_id_var.get()
    if attempt_id:
        headers[ATTEMPT_ID_HEADER] = attempt_id
    span_id = _span_id_var.get()
    if span_id:
        headers[SPAN_ID_HEADER] = span_id
    return headers
