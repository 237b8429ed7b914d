"""
Rate limit dependency for FastAPI routes.
"""
from fastapi import Request, HTTPException, Depends

from glassops.routes.metrics import track_rate_limit_exceeded
from glassops.services.rate_limiter import RateLimiter, rate_limiter


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


async def check_intake_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Check the intake rate limit for the calling client.

    Raises 429 if limit exceeded.
    """
    client_id = request.client.host if request.client else "unknown"
    allowed, retry_after = await limiter.is_allowed("intake", client_id)

    if not allowed:
        track_rate_limit_exceeded("intake")
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers={"Retry-After": str(retry_after)}
        )
