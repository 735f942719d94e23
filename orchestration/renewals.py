import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from api.metrics import metrics
from config import config
from risk.models import Subscription
from store.base import AlertStore


logger = logging.getLogger(__name__)

PLAN_NAMES = {"monthly": "monthly", "quarterly": "quarterly", "yearly": "yearly"}


@dataclass
class RenewalReport:
    expiring: int = 0
    critical: int = 0
    expired: int = 0
    notified: int = 0
    deduplicated: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


def _days_until(expires_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((expires_at - now).total_seconds() / 86400))


def renewal_notice(subscription: Subscription, now: datetime) -> Tuple[str, str, str, str]:
    """Return (dedup_key, title, description, type) for an expiring subscription."""
    days = _days_until(subscription.expires_at, now)
    unit = "day" if days == 1 else "days"
    plan = PLAN_NAMES.get(subscription.plan_type, subscription.plan_type)
    if subscription.auto_renew:
        return (
            "renewal_auto",
            "Automatic renewal scheduled",
            f"Your {plan} subscription renews automatically in {days} {unit}. "
            "Make sure your payment method is up to date.",
            "info",
        )
    if days <= 3:
        return (
            "renewal_soon",
            "Subscription expiring soon",
            f"Your subscription expires in {days} {unit}. Renew now to keep monitoring active.",
            "warning",
        )
    return (
        "renewal_reminder",
        "Renewal reminder",
        f"Your subscription expires in {days} days. Don't forget to renew.",
        "info",
    )


class RenewalSweep:
    """Notifies expiring subscriptions and deactivates expired ones.

    Each notice goes through ``insert_notification_once`` keyed per user and
    UTC day, so repeated sweeps within a day send nothing new.
    """

    def __init__(self, store: AlertStore, notice_days: Optional[int] = None):
        self.store = store
        self.notice_days = int(notice_days or config.section("scheduler").get("renewal_notice_days", 7))

    async def _notify(self, report: RenewalReport, subscription: Subscription, now: datetime,
                      dedup_key: str, title: str, description: str, type: str) -> None:
        created, _ = await self.store.insert_notification_once(
            subscription.user_id,
            dedup_key,
            now.date(),
            title,
            description,
            type=type,
        )
        if created:
            report.notified += 1
            metrics.record_renewal_notification(dedup_key)
        else:
            report.deduplicated += 1

    async def run(self, now: Optional[datetime] = None) -> RenewalReport:
        now = now or datetime.now(timezone.utc)
        report = RenewalReport()

        expiring = await self.store.subscriptions_expiring(now, now + timedelta(days=self.notice_days))
        report.expiring = len(expiring)
        for subscription in expiring:
            remaining = subscription.expires_at - now
            if timedelta(hours=23) <= remaining <= timedelta(hours=25):
                report.critical += 1
                plan = PLAN_NAMES.get(subscription.plan_type, subscription.plan_type)
                await self._notify(
                    report, subscription, now,
                    "renewal_24h",
                    "URGENT: subscription expires in 24 hours",
                    f"Your {plan} subscription expires in 24 hours. Renew now to avoid losing monitoring.",
                    "critical",
                )
            await self._notify(report, subscription, now, *renewal_notice(subscription, now))

        expired = await self.store.subscriptions_expired(now)
        report.expired = len(expired)
        for subscription in expired:
            try:
                await self.store.mark_subscription_inactive(subscription.id)
            except Exception as exc:
                logger.error("Deactivating subscription %s failed: %s", subscription.id, exc)
                continue
            await self._notify(
                report, subscription, now,
                "subscription_expired",
                "Subscription expired",
                "Your subscription expired. Renew now to keep using every feature.",
                "error",
            )

        logger.info(
            "Renewal sweep: %s expiring (%s within 24h), %s expired, %s notified",
            report.expiring,
            report.critical,
            report.expired,
            report.notified,
        )
        return report
