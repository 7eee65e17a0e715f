# /app/utils/rate_limiter.py

from fastapi import Request
from slowapi import Limiter
from app.config.settings import settings

# Shared limiter instance, imported by main and the route modules.
# Simulation runs live in process memory, so run creation is limited per client.


def client_key(request: Request) -> str:
    """Rate-limit key: the client's IP address, or loopback when the transport does not report one."""
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


limiter = Limiter(
    key_func=client_key,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.rate_limit_enabled,
)
