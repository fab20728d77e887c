"""Request-scoped context for correlating log records.

The coordinator enters ``request_context`` for every logical request so that
audit events and retries can be tied back to the originating request id.
"""

from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator

request_id: ContextVar[str] = ContextVar("request_id", default="")


def get_correlation_id() -> str:
    """Return the current request id, or an empty string outside a request."""
    return request_id.get()


@asynccontextmanager
async def request_context(correlation_id: str) -> AsyncIterator[str]:
    """Bind ``correlation_id`` for the duration of the block."""
    token = request_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        request_id.reset(token)
