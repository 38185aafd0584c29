from slowapi import Limiter
from starlette.requests import Request


def get_real_client_ip(request: Request) -> str | None:
    """Extract real client IP, trusting the headers set by our proxy.

    Behind Vercel or a reverse proxy the client's address is the first hop of
    X-Forwarded-For, or X-Real-IP. Falls back to the socket peer for direct
    connections.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def rate_limit_key(request: Request) -> str:
    return get_real_client_ip(request) or "unknown"


limiter = Limiter(key_func=rate_limit_key)
