"""Shared rate limiter instance for use across route files."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from inventory_engine.core.config import settings


def get_actor_or_ip(request: Request) -> str:
    """Rate limit checkout terminals by actor id when they send one, else by IP."""
    actor = request.headers.get("X-Actor-Id", "").strip()
    if actor:
        return f"actor:{actor}"
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_actor_or_ip,
    enabled=settings.rate_limit_enabled,
)
