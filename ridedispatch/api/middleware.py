"""
Rate limiting.

Counters live in the storage named by ``RATE_LIMIT_STORAGE_URI`` (Redis in
deployment) so every API process shares them; nothing here keeps
per-process state.  Requests are keyed by the authenticated user id, set
on ``request.state`` by ``dependencies.get_actor``, falling back to the
client address for unauthenticated calls.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ridedispatch.config import settings


def rate_limit_key(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=rate_limit_key,
    storage_uri=settings.rate_limit_storage_uri,
)
