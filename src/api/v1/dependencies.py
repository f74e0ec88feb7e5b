from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from auth import AuthTokenError, Identity, verify_access_token
from services.rate_limit import RATE_LIMIT_MESSAGE, caller_key, is_exempt, weather_rate_limiter


def get_current_user(authorization: str | None = Header(default=None)) -> Identity:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    try:
        return verify_access_token(token)
    except AuthTokenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def enforce_weather_rate_limit(
    request: Request,
    current_user: Identity = Depends(get_current_user),
) -> Identity:
    if is_exempt(current_user):
        return current_user
    remote_addr = request.client.host if request.client else None
    quota = weather_rate_limiter.check(caller_key(current_user, remote_addr))
    if not quota.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=RATE_LIMIT_MESSAGE,
            headers={"Retry-After": str(quota.retry_after_seconds)},
        )
    return current_user
