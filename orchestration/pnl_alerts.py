import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from api.metrics import metrics
from risk.models import AccountSnapshot, RiskProfile, utc_today
from risk.pnl_alerts import PnLAlertHit, check_pnl_alerts, pnl_figures
from store.base import AlertStore


logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Awaitable[Any]]


@dataclass
class PnLAlertReport:
    users: int = 0
    triggered: int = 0
    notified: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users": self.users,
            "triggered": self.triggered,
            "notified": self.notified,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class PnLAlertChecker:
    """Checks the per-user PnL rules and files one notification per rule and UTC day.

    Runs inline from the live poller with the fresh snapshot, and as a
    scheduled sweep over every user that has rules.
    """

    def __init__(self, store: AlertStore, client_factory: Optional[ClientFactory] = None):
        self.store = store
        self.client_factory = client_factory

    async def check(self, user_id: str, profile: RiskProfile, snapshot: AccountSnapshot) -> List[PnLAlertHit]:
        """Return the rules that fired; only newly filed ones are notified."""
        configs = await self.store.list_pnl_alert_configs(user_id)
        if not configs:
            return []
        hits = check_pnl_alerts(configs, pnl_figures(profile, snapshot))
        for hit in hits:
            hit.notified, _ = await self.store.insert_notification_once(
                user_id,
                hit.dedup_key,
                utc_today(),
                hit.title,
                hit.description,
                type=hit.notification_type,
            )
            metrics.record_alert(f"pnl_{hit.config.alert_type}", hit.notified)
            if hit.notified:
                logger.info("PnL %s alert for %s: %s", hit.config.alert_type, user_id, hit.description)
        return hits

    async def _snapshot(self, user_id: str) -> AccountSnapshot:
        client = await self.client_factory(user_id)
        try:
            return await client.fetch_account_snapshot()
        finally:
            await client.close()

    async def run(self) -> PnLAlertReport:
        report = PnLAlertReport()
        if self.client_factory is None:
            logger.warning("PnL alert sweep skipped, no exchange client factory")
            return report

        configs = await self.store.list_pnl_alert_configs()
        for user_id in sorted({c.user_id for c in configs if c.enabled}):
            report.users += 1
            try:
                profile = await self.store.get_risk_profile(user_id)
                if profile is None:
                    continue
                snapshot = await self._snapshot(user_id)
                hits = await self.check(user_id, profile, snapshot)
                report.triggered += len(hits)
                report.notified += sum(1 for hit in hits if hit.notified)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                report.failed += 1
                report.errors.append(f"{user_id}: {exc}")
                logger.error("PnL alert check for %s failed: %s", user_id, exc)

        logger.info(
            "PnL alert sweep: %s users, %s rules triggered, %s notified, %s failed",
            report.users,
            report.triggered,
            report.notified,
            report.failed,
        )
        return report
