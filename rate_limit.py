"""
Per-identifier daily request counters.

One windowing policy is used everywhere: a fixed calendar-day window in UTC.
The counter key embeds the date, and the first increment of the day gives it
a TTL that runs out at midnight UTC, so yesterday's counters expire on their
own.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis
from fastapi import Request
from pydantic import BaseModel

from constants import ADMIN_USERNAME
from redis_keys import RATE_LIMIT_KEY
from logging_config import get_logger

logger = get_logger(__name__)


class RateLimitResult(BaseModel):
    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_seconds: int


def _seconds_until_end_of_day(now: datetime) -> int:
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return max(1, int((tomorrow - now).total_seconds()))


def make_key(scope: str, identifier: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return RATE_LIMIT_KEY.format(scope=scope, identifier=identifier, date=now.strftime("%Y-%m-%d"))


def get_client_identifier(request: Request, username: Optional[str] = None) -> str:
    if username and username.strip():
        return username.strip().lower()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip().lower()
    if request.client and request.client.host:
        return request.client.host.lower()
    return "anon"


def check_and_increment(
    client: redis.Redis,
    scope: str,
    identifier: str,
    limit: int,
    now: Optional[datetime] = None,
) -> RateLimitResult:
    now = now or datetime.now(timezone.utc)
    key = make_key(scope, identifier, now)
    reset_seconds = _seconds_until_end_of_day(now)

    if identifier == ADMIN_USERNAME:
        return RateLimitResult(allowed=True, count=0, limit=limit, remaining=limit, reset_seconds=reset_seconds)

    try:
        count = client.incr(key)
        if count == 1:
            client.expire(key, reset_seconds)
        if count > limit:
            # keep the stored count at the ceiling
            client.decr(key)
            logger.warning(f"Rate limit exceeded for {scope} by {identifier}: {count - 1}/{limit}")
            return RateLimitResult(allowed=False, count=count - 1, limit=limit, remaining=0, reset_seconds=reset_seconds)
    except redis.RedisError as e:
        logger.error(f"Rate limit check failed for {scope}:{identifier}: {e}", exc_info=True)
        return RateLimitResult(allowed=True, count=0, limit=limit, remaining=limit, reset_seconds=reset_seconds)

    logger.debug(f"Rate limit {key}: {count}/{limit}")
    return RateLimitResult(allowed=True, count=count, limit=limit, remaining=limit - count, reset_seconds=reset_seconds)
