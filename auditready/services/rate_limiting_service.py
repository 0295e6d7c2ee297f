"""
Rate Limiting Service for MFA Security
Server-side attempt limiting keyed by factor, user, or admin actor
"""

import time
import json
import uuid
from typing import Dict, Any, Optional
from dataclasses import dataclass
from enum import Enum

from auditready.config.redis_config import get_redis_client, RedisKeyBuilder
from auditready.config.settings import (
    MFA_MAX_FAILED_ATTEMPTS,
    MFA_FAILURE_WINDOW_SECONDS,
    ADMIN_RESETS_PER_HOUR
)
from auditready.core.logging import get_logger, mask_identifier

logger = get_logger(__name__)


class RateLimitType(str, Enum):
    """What is being counted, and per which identifier"""
    MFA_VERIFICATION = "mfa_verification"   # failed codes per factor
    RECOVERY_CODE = "recovery_code"         # failed recovery codes per user
    MFA_ENROLLMENT = "mfa_enrollment"       # enrollments per user
    ADMIN_MFA_RESET = "admin_mfa_reset"     # resets per admin


@dataclass
class RateLimitRule:
    """Rate limiting rule configuration"""
    requests: int  # Attempts allowed within the window
    window: int    # Window length in seconds
    block_duration: int  # Lockout length in seconds once the limit is hit


class RateLimitResult:
    """Result of rate limit check"""
    def __init__(self, allowed: bool, remaining: int, reset_time: int, retry_after: Optional[int] = None):
        self.allowed = allowed
        self.remaining = remaining
        self.reset_time = reset_time
        self.retry_after = retry_after  # Seconds until the next attempt is accepted


# Returned whenever the store cannot be consulted
FAIL_OPEN = RateLimitResult(allowed=True, remaining=999, reset_time=0)


class RateLimitingService:
    """
    Sliding-window attempt counter backed by Redis sorted sets

    Reaching a rule's limit sets a lockout key for ``block_duration``
    seconds. Store failures are logged and the attempt is allowed.
    """

    def __init__(self, redis_client=None, rules: Optional[Dict[RateLimitType, RateLimitRule]] = None):
        self.redis_client = redis_client
        self.key_builder = RedisKeyBuilder()

        self.default_rules = {
            RateLimitType.MFA_VERIFICATION: RateLimitRule(
                MFA_MAX_FAILED_ATTEMPTS, MFA_FAILURE_WINDOW_SECONDS, MFA_FAILURE_WINDOW_SECONDS
            ),
            RateLimitType.RECOVERY_CODE: RateLimitRule(
                MFA_MAX_FAILED_ATTEMPTS, MFA_FAILURE_WINDOW_SECONDS, MFA_FAILURE_WINDOW_SECONDS
            ),
            RateLimitType.MFA_ENROLLMENT: RateLimitRule(10, 3600, 1800),
            RateLimitType.ADMIN_MFA_RESET: RateLimitRule(ADMIN_RESETS_PER_HOUR, 3600, 3600),
        }
        if rules:
            self.default_rules.update(rules)

    async def _get_redis(self):
        """Get Redis client with lazy initialization"""
        if self.redis_client is None:
            self.redis_client = await get_redis_client()
        return self.redis_client

    async def _lockout_remaining(self, redis, lockout_key: str, now: int) -> Optional[int]:
        """Seconds left on an active lockout, or None; clears a lapsed one."""
        raw = await redis.get(lockout_key)
        if not raw:
            return None

        locked_until = json.loads(raw).get("block_until", 0)
        if now < locked_until:
            return locked_until - now

        await redis.delete(lockout_key)
        return None

    async def check_rate_limit(
        self,
        limit_type: RateLimitType,
        identifier: str,
        rule: Optional[RateLimitRule] = None
    ) -> RateLimitResult:
        """
        Check whether another attempt is accepted

        Args:
            limit_type: Type of rate limit to check
            identifier: Factor ID, user ID or admin ID
            rule: Custom rate limit rule (uses default if not provided)

        Returns:
            RateLimitResult with allow/deny decision and metadata
        """
        rule = rule or self.default_rules.get(limit_type)
        if not rule:
            logger.warning(f"No rate limit rule found for {limit_type}")
            return FAIL_OPEN

        try:
            redis = await self._get_redis()
            now = int(time.time())
            attempts_key = self.key_builder.attempts_key(limit_type.value, identifier)
            lockout_key = self.key_builder.lockout_key(limit_type.value, identifier)

            retry_after = await self._lockout_remaining(redis, lockout_key, now)
            if retry_after is not None:
                logger.warning(
                    f"Attempt rejected during lockout: {limit_type.value} (retry in {retry_after}s)",
                    {"identifier": mask_identifier(identifier)}
                )
                return RateLimitResult(
                    allowed=False, remaining=0, reset_time=now + retry_after, retry_after=retry_after
                )

            await redis.zremrangebyscore(attempts_key, 0, now - rule.window)
            attempts = await redis.zcard(attempts_key)

            if attempts >= rule.requests:
                locked_until = now + rule.block_duration
                await redis.setex(
                    lockout_key,
                    rule.block_duration,
                    json.dumps({
                        "blocked_at": now,
                        "block_until": locked_until,
                        "limit_type": limit_type.value,
                        "requests": attempts
                    })
                )
                logger.warning(
                    f"Attempt limit reached: {limit_type.value} "
                    f"({attempts}/{rule.requests} in {rule.window}s)",
                    {"identifier": mask_identifier(identifier)}
                )
                return RateLimitResult(
                    allowed=False, remaining=0, reset_time=locked_until, retry_after=rule.block_duration
                )

            return RateLimitResult(
                allowed=True,
                remaining=rule.requests - attempts,
                reset_time=now + rule.window
            )

        except Exception as e:
            logger.error(
                f"Rate limit check failed, allowing attempt: {type(e).__name__}",
                {"limit_type": limit_type.value, "identifier": mask_identifier(identifier)}
            )
            return FAIL_OPEN

    async def record_request(
        self,
        limit_type: RateLimitType,
        identifier: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Count one attempt against the identifier

        Returns:
            Attempts in the current window, or 0 if the store is unavailable
        """
        try:
            redis = await self._get_redis()
            now = time.time()
            attempts_key = self.key_builder.attempts_key(limit_type.value, identifier)

            member = json.dumps({"id": str(uuid.uuid4()), "timestamp": now, "metadata": metadata or {}})
            await redis.zadd(attempts_key, {member: now})

            rule = self.default_rules.get(limit_type)
            if rule:
                await redis.expire(attempts_key, rule.window + rule.block_duration)
                await redis.zremrangebyscore(attempts_key, 0, now - rule.window)

            return await redis.zcard(attempts_key)

        except Exception as e:
            logger.error(
                f"Failed to record attempt: {type(e).__name__}",
                {"limit_type": limit_type.value, "identifier": mask_identifier(identifier)}
            )
            return 0

    async def reset_rate_limit(self, limit_type: RateLimitType, identifier: str) -> bool:
        """
        Clear the attempt window and any lockout

        Returns:
            True if any tracking data was removed
        """
        try:
            redis = await self._get_redis()
            deleted = await redis.delete(
                self.key_builder.attempts_key(limit_type.value, identifier),
                self.key_builder.lockout_key(limit_type.value, identifier)
            )
            logger.debug(f"Reset rate limit for {limit_type.value} (deleted {deleted} keys)")
            return deleted > 0

        except Exception as e:
            logger.error(f"Failed to reset rate limit: {type(e).__name__}")
            return False


# Global rate limiting service instance
rate_limiting_service = RateLimitingService()


async def get_rate_limiting_service() -> RateLimitingService:
    """Get rate limiting service instance"""
    return rate_limiting_service
