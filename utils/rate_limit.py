"""Rate limiting utilities using throttled-py"""
import os
from datetime import timedelta
from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import logger

# Initialize storage - Redis for production, MemoryStore for development
_storage_type = "memory"
try:
    redis_url = os.getenv("REDIS_URL", "").strip()
    if redis_url:
        storage = store.RedisStore(server=redis_url)
        _storage_type = "redis"
        logger.info("[rate_limit] Using Redis for rate limiting")
    else:
        storage = store.MemoryStore()
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
except Exception as ex:
    storage = store.MemoryStore()
    logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")

TRACK_CLICKS_PER_MINUTE = int(os.getenv("AFFILIATE_TRACK_PER_MINUTE", "30"))
REGISTRATIONS_PER_HOUR = int(os.getenv("AFFILIATE_REGISTER_PER_HOUR", "5"))

# Referral click limiter: per IP per minute (keeps bots from inflating click counts)
track_click_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=TRACK_CLICKS_PER_MINUTE),
    store=storage,
)

# Affiliate registration limiter: per IP per hour
affiliate_register_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(hours=1), limit=REGISTRATIONS_PER_HOUR),
    store=storage,
)


def check_track_rate_limit(ip: str) -> tuple[bool, str]:
    try:
        result = track_click_throttle.limit(f"aff_track:{ip}", cost=1)
        if result.limited:
            return False, "Too many referral clicks. Please try again later."
        return True, ""
    except Exception as ex:
        logger.warning(f"[rate_limit] Track rate limit check failed: {ex}")
        # Fail open
        return True, ""


def check_register_rate_limit(ip: str) -> tuple[bool, str]:
    try:
        result = affiliate_register_throttle.limit(f"aff_register:{ip}", cost=1)
        if result.limited:
            return False, "Too many registration attempts. Please try again later."
        return True, ""
    except Exception as ex:
        logger.warning(f"[rate_limit] Register rate limit check failed: {ex}")
        return True, ""
