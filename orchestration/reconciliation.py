import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from api.alerts import alert_webhook
from api.metrics import metrics
from config import config
from ingest.binance_rest import AuthError
from monitoring.event_bus import NotificationBus
from risk.models import BinanceAccount, DailyPnL, utc_today
from security.credentials import CredentialVault
from security.encryption import DecryptionError
from store.base import AlertStore


logger = logging.getLogger(__name__)

AccountClientFactory = Callable[[BinanceAccount], Awaitable[Any]]


@dataclass
class SyncProgress:
    completed: int = 0
    total: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.completed + self.failed >= self.total

    def merge(self, other: "SyncProgress") -> None:
        self.completed += other.completed
        self.total += other.total
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def day_bounds_ms(day: date) -> tuple:
    start = datetime.combine(day, dtime.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1) - timedelta(milliseconds=1)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


class DailyPnLReconciler:
    """Backfills missing DailyPnL rows for each active account and market type.

    Days are independent: a failed day is counted and reported while the
    rest of the window continues.
    """

    def __init__(
        self,
        store: AlertStore,
        client_factory: Optional[AccountClientFactory] = None,
        bus: Optional[NotificationBus] = None,
        window_days: Optional[int] = None,
        market_types: Optional[Sequence[str]] = None,
        pause_s: Optional[float] = None,
    ):
        sched_cfg = config.section("scheduler")
        self.store = store
        self.bus = bus
        self.client_factory = client_factory or self._vault_client
        self.max_window_days = int(sched_cfg.get("reconciliation_max_window_days", 365))
        self.window_days = self._clamp(window_days or int(sched_cfg.get("reconciliation_window_days", 30)))
        self.market_types = list(market_types or sched_cfg.get("reconciliation_market_types", ["USDT", "COIN"]))
        self.pause_s = float(pause_s if pause_s is not None else sched_cfg.get("reconciliation_pause_s", 1.0))
        self._vault = CredentialVault(store)

    def _clamp(self, window_days: int) -> int:
        return max(1, min(int(window_days), self.max_window_days))

    async def _vault_client(self, account: BinanceAccount) -> Any:
        from ingest.account_client import AccountClient
        return AccountClient(self._vault.decrypt_account(account))

    async def missing_days(self, user_id: str, market_type: str, window_days: int, today: Optional[date] = None) -> List[date]:
        today = today or utc_today()
        start = today - timedelta(days=window_days)
        end = today - timedelta(days=1)
        existing = await self.store.existing_pnl_days(user_id, market_type, start, end)
        days = []
        day = start
        while day <= end:
            if day not in existing:
                days.append(day)
            day += timedelta(days=1)
        return days

    async def sync_account(
        self,
        account: BinanceAccount,
        window_days: Optional[int] = None,
        today: Optional[date] = None,
    ) -> SyncProgress:
        window = self._clamp(window_days or self.window_days)
        plan = []
        for market_type in self.market_types:
            for day in await self.missing_days(account.user_id, market_type, window, today):
                plan.append((market_type, day))
        progress = SyncProgress(total=len(plan))
        if not plan:
            return progress

        try:
            client = await self.client_factory(account)
        except (AuthError, DecryptionError) as exc:
            progress.failed = progress.total
            progress.errors.append(f"{account.user_id}: credentials unusable: {exc}")
            logger.error("PnL sync for %s skipped: %s", account.user_id, exc)
            return progress

        balances: Dict[str, Optional[float]] = {}
        try:
            for index, (market_type, day) in enumerate(plan):
                try:
                    if market_type not in balances:
                        balances[market_type] = await client.fetch_wallet_balance(market_type)
                    start_ms, end_ms = day_bounds_ms(day)
                    pnl = await client.fetch_realized_pnl(start_ms, end_ms, market_type)
                    balance = balances[market_type]
                    percentage = (pnl / balance) * 100 if balance and balance > 0 else 0.0
                    await self.store.upsert_daily_pnl(DailyPnL(
                        user_id=account.user_id,
                        day=day,
                        market_type=market_type,
                        pnl_usd=pnl,
                        pnl_percentage=percentage,
                    ))
                    progress.completed += 1
                    metrics.record_reconciliation_day(True)
                except asyncio.CancelledError:
                    raise
                except AuthError as exc:
                    remaining = len(plan) - index
                    progress.failed += remaining
                    progress.errors.append(f"{account.user_id}: credentials rejected: {exc}")
                    logger.error("PnL sync for %s aborted: %s", account.user_id, exc)
                    break
                except Exception as exc:
                    progress.failed += 1
                    progress.errors.append(f"{account.user_id} {market_type} {day.isoformat()}: {exc}")
                    metrics.record_reconciliation_day(False)
                    logger.warning("PnL sync %s %s %s failed: %s", account.user_id, market_type, day, exc)
                self._publish_progress(account.user_id, progress)
        finally:
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        return progress

    async def sync_user(self, user_id: str, window_days: Optional[int] = None) -> SyncProgress:
        account = await self.store.get_active_account(user_id)
        if account is None:
            return SyncProgress(errors=[f"{user_id}: no active exchange account"])
        return await self.sync_account(account, window_days)

    async def run(self, window_days: Optional[int] = None) -> SyncProgress:
        accounts = await self.store.list_active_accounts()
        overall = SyncProgress()
        logger.info("Daily PnL reconciliation starting for %s accounts", len(accounts))
        for position, account in enumerate(accounts):
            try:
                overall.merge(await self.sync_account(account, window_days))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                overall.errors.append(f"{account.user_id}: {exc}")
                logger.error("PnL sync for %s failed: %s", account.user_id, exc)
            if self.pause_s > 0 and position < len(accounts) - 1:
                await asyncio.sleep(self.pause_s)
        logger.info(
            "Daily PnL reconciliation finished: %s/%s days, %s failed",
            overall.completed,
            overall.total,
            overall.failed,
        )
        if overall.failed:
            await alert_webhook.reconciliation_alert(overall.failed, overall.total)
        return overall

    def _publish_progress(self, user_id: str, progress: SyncProgress) -> None:
        if self.bus is not None:
            self.bus.publish("pnl_sync_progress", user_id, {
                "completed": progress.completed,
                "total": progress.total,
                "failed": progress.failed,
            })
