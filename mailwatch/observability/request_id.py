"""Correlation IDs for log records.

HTTP requests get their ID from RequestIDMiddleware. Work that runs outside a
request (renewal sweeps, timer fires, reprocessing) binds its own ID with
bind_request_id() so its log lines can still be grouped.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context variable for request_id (async-safe)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def generate_request_id(prefix: Optional[str] = None) -> str:
    """New correlation ID, e.g. "sweep-3f2a..." when a prefix is given."""
    value = str(uuid.uuid4())
    return f"{prefix}-{value}" if prefix else value


def get_request_id() -> str:
    return request_id_var.get() or "no-request-id"


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


@contextmanager
def bind_request_id(request_id: str) -> Iterator[str]:
    """Set the correlation ID for the enclosed block, restoring the previous one after."""
    token = request_id_var.set(request_id)
    try:
        yield request_id
    finally:
        request_id_var.reset(token)
