import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from api.metrics import metrics
from config import config
from store.base import AlertStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    max_attempts: int
    window_minutes: int

    @property
    def window_s(self) -> int:
        return self.window_minutes * 60


DEFAULT_LIMITS: Dict[str, RateLimit] = {
    "login": RateLimit(5, 15),
    "signup": RateLimit(3, 60),
    "password_reset": RateLimit(3, 60),
    "voucher": RateLimit(5, 10),
    "default": RateLimit(5, 15),
}


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {"allowed": self.allowed}
        if not self.allowed:
            data["retry_after"] = self.retry_after
            data["message"] = self.message
        return data


class RateLimitGate:
    def __init__(self, store: AlertStore, limits: Optional[Dict[str, RateLimit]] = None):
        self.store = store
        self.limits = limits or self._load_limits()

    @staticmethod
    def _load_limits() -> Dict[str, RateLimit]:
        limits = dict(DEFAULT_LIMITS)
        raw = config.section("security").get("rate_limits") or {}
        for name in raw:
            entry = raw[name]
            limits[name] = RateLimit(int(entry["max_attempts"]), int(entry["window_minutes"]))
        return limits

    def limit_for(self, attempt_type: str) -> RateLimit:
        return self.limits.get(attempt_type) or self.limits["default"]

    async def check(self, identifier: str, attempt_type: str, success: bool = False) -> RateLimitDecision:
        """Count prior attempts in the window, then record this one.

        Any failure inside the check allows the attempt.
        """
        limit = self.limit_for(attempt_type)
        try:
            since = datetime.now(timezone.utc) - timedelta(minutes=limit.window_minutes)
            prior = await self.store.count_auth_attempts(identifier, attempt_type, since)
            await self.store.record_auth_attempt(identifier, attempt_type, success)
        except Exception as exc:
            logger.error("Rate limit check failed for %s/%s, allowing: %s", identifier, attempt_type, exc)
            return RateLimitDecision(allowed=True)

        if prior >= limit.max_attempts:
            logger.warning("Rate limit exceeded for %s: %s", attempt_type, identifier)
            metrics.record_rate_limit_denial(attempt_type)
            return RateLimitDecision(
                allowed=False,
                retry_after=limit.window_s,
                message=f"Please wait {limit.window_minutes} minutes before trying again",
            )
        return RateLimitDecision(allowed=True)
