"""FastAPI dependencies for dependency injection"""

import logging
import secrets
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.database import get_db
from ..db.models import UserDB
from ..db.repositories import UserRepository
from ..services.engine import ArenaEngine
from ..services.redis_service import RedisService
from .config import Settings, get_settings
from .errors import AppError, ErrorCode
from .security import verify_token

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="/api/v1/auth/token",
    auto_error=False,
)


def get_engine(request: Request) -> ArenaEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise AppError(ErrorCode.SERVICE_UNAVAILABLE, "Engine not started", 503)
    return engine


def get_redis(request: Request) -> Optional[RedisService]:
    return getattr(request.app.state, "redis", None)


async def get_current_wallet(
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
) -> str:
    """
    Wallet address from the bearer token.

    Raises:
        HTTPException 401: If token is missing or invalid
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return verify_token(token).sub
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    wallet: Annotated[str, Depends(get_current_wallet)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> UserDB:
    """The wallet was verified upstream; first sight creates the user row."""
    user = await UserRepository(db).get_or_create(wallet)
    await db.commit()
    return user


# ==================== Rate Limiting ====================


async def rate_limit_monitor(
    request: Request,
    redis: Annotated[Optional[RedisService], Depends(get_redis)],
) -> None:
    """
    Rate limiter for on-demand monitor checks, per client IP.

    Raises:
        HTTPException 429: If rate limit exceeded
        HTTPException 503: In production if Redis is unavailable
    """
    settings = get_settings()
    client_ip = request.client.host if request.client else "unknown"
    identifier = f"monitor:{client_ip}"

    try:
        if redis is None:
            raise RedisError("Redis not configured")
        allowed, _ = await redis.check_rate_limit(
            identifier=identifier,
            max_requests=settings.monitor_rate_limit,
            window_seconds=settings.monitor_rate_window,
        )
        if not allowed:
            retry_after = await redis.get_rate_limit_ttl(identifier) or settings.monitor_rate_window
            logger.warning(f"Monitor rate limit exceeded from IP: {client_ip}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={"Retry-After": str(retry_after)},
            )
    except RedisError as e:
        logger.error(f"Redis unavailable for monitor rate limiting: {e}")
        if settings.environment == "production":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service temporarily unavailable. Please try again.",
                headers={"Retry-After": "5"},
            )


# ==================== Cron ====================


async def verify_cron_secret(
    request: Request,
    secret: Annotated[Optional[str], Query()] = None,
) -> None:
    """
    Sweep endpoints accept `Authorization: Bearer <CRON_SECRET>` or `?secret=`.

    Raises:
        AppError 500: If no cron secret is configured
        AppError 401: If the presented secret does not match
    """
    expected = get_settings().cron_secret
    if not expected:
        logger.error("CRON_SECRET is not configured; refusing sweep request")
        raise AppError(ErrorCode.INTERNAL_ERROR, "Cron secret not configured", 500)

    presented = secret
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        presented = auth_header[len("Bearer "):]

    if not presented or not secrets.compare_digest(presented, expected):
        raise AppError(ErrorCode.CRON_UNAUTHORIZED, "Unauthorized", 401)


# ==================== Type Aliases ====================

SettingsDep = Annotated[Settings, Depends(get_settings)]
DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
EngineDep = Annotated[ArenaEngine, Depends(get_engine)]
CurrentWalletDep = Annotated[str, Depends(get_current_wallet)]
CurrentUserDep = Annotated[UserDB, Depends(get_current_user)]
RateLimitMonitorDep = Annotated[None, Depends(rate_limit_monitor)]
CronAuthDep = Annotated[None, Depends(verify_cron_secret)]
