import asyncio
import itertools
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from monitoring.event_bus import NotificationBus
from risk.models import (
    AlertRecord,
    AlertType,
    BinanceAccount,
    DailyPnL,
    Notification,
    PnLAlertConfig,
    RiskProfile,
    Subscription,
)
from store.base import AlertStore


logger = logging.getLogger(__name__)


class MemoryStore(AlertStore):
    """Single-process store. Every mutation holds one asyncio.Lock."""

    def __init__(self, bus: Optional[NotificationBus] = None):
        super().__init__(bus)
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._alerts: Dict[int, AlertRecord] = {}
        self._alert_keys: Dict[Tuple[str, AlertType, date, bool], int] = {}
        self._notifications: Dict[int, Notification] = {}
        self._notification_keys: Dict[Tuple[str, str, date], int] = {}
        self._profiles: Dict[str, RiskProfile] = {}
        self._pnl_alert_configs: Dict[int, PnLAlertConfig] = {}
        self.config_history: List[Dict[str, Any]] = []
        self._accounts: Dict[int, BinanceAccount] = {}
        self._daily_pnl: Dict[Tuple[str, date, str], DailyPnL] = {}
        self._auth_attempts: List[Tuple[str, str, bool, datetime]] = []
        self._subscriptions: Dict[Any, Subscription] = {}

    async def record_alert_if_absent(
        self,
        user_id: str,
        alert_type: AlertType,
        day: date,
        percent_at_trigger: float,
        message: str = "",
        balance_at_alert: Optional[float] = None,
        is_test: bool = False,
    ) -> Tuple[bool, AlertRecord]:
        key = (user_id, alert_type, day, is_test)
        async with self._lock:
            existing_id = self._alert_keys.get(key)
            if existing_id is not None:
                return False, self._alerts[existing_id]
            record = AlertRecord(
                id=next(self._ids),
                user_id=user_id,
                alert_type=alert_type,
                percent_at_trigger=percent_at_trigger,
                alert_day=day,
                message=message,
                balance_at_alert=balance_at_alert,
                is_test=is_test,
            )
            self._alerts[record.id] = record
            self._alert_keys[key] = record.id
        self._publish_alert(record)
        return True, record

    async def acknowledge_alert(self, record_id: int) -> Optional[AlertRecord]:
        async with self._lock:
            record = self._alerts.get(record_id)
            if record is None:
                return None
            if not record.acknowledged:
                record.acknowledged = True
                record.acknowledged_at = datetime.now(timezone.utc)
            return record

    async def acknowledge_open_alerts(self, user_id: str) -> int:
        now = datetime.now(timezone.utc)
        count = 0
        async with self._lock:
            for record in self._alerts.values():
                if record.user_id == user_id and not record.acknowledged:
                    record.acknowledged = True
                    record.acknowledged_at = now
                    count += 1
        return count

    async def list_alerts(self, user_id: str, limit: int = 50) -> List[AlertRecord]:
        rows = [r for r in self._alerts.values() if r.user_id == user_id]
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return rows[:limit]

    async def clear_test_alerts(self, user_id: str) -> int:
        async with self._lock:
            doomed = [r for r in self._alerts.values() if r.user_id == user_id and r.is_test]
            for record in doomed:
                del self._alerts[record.id]
                self._alert_keys.pop((record.user_id, record.alert_type, record.alert_day, True), None)
        return len(doomed)

    async def insert_notification(
        self,
        user_id: str,
        title: str,
        description: str,
        type: str = "info",
    ) -> Notification:
        async with self._lock:
            notification = Notification(
                id=next(self._ids),
                user_id=user_id,
                title=title,
                description=description,
                type=type,
            )
            self._notifications[notification.id] = notification
        self._publish_notification(notification)
        return notification

    async def insert_notification_once(
        self,
        user_id: str,
        dedup_key: str,
        day: date,
        title: str,
        description: str,
        type: str = "info",
    ) -> Tuple[bool, Optional[Notification]]:
        key = (user_id, dedup_key, day)
        async with self._lock:
            existing_id = self._notification_keys.get(key)
            if existing_id is not None:
                return False, self._notifications.get(existing_id)
            notification = Notification(
                id=next(self._ids),
                user_id=user_id,
                title=title,
                description=description,
                type=type,
                dedup_key=dedup_key,
                dedup_day=day,
            )
            self._notifications[notification.id] = notification
            self._notification_keys[key] = notification.id
        self._publish_notification(notification)
        return True, notification

    async def mark_notification_read(self, notification_id: int) -> bool:
        async with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None:
                return False
            notification.is_read = True
            return True

    async def list_notifications(self, user_id: str, limit: int = 50) -> List[Notification]:
        rows = [n for n in self._notifications.values() if n.user_id == user_id]
        rows.sort(key=lambda n: (n.created_at, n.id), reverse=True)
        return rows[:limit]

    async def get_risk_profile(self, user_id: str) -> Optional[RiskProfile]:
        return self._profiles.get(user_id)

    async def save_risk_profile(self, profile: RiskProfile) -> RiskProfile:
        async with self._lock:
            self._profiles[profile.user_id] = profile
        return profile

    async def record_config_history(self, user_id: str, changes: Dict[str, Tuple[Any, Any]]) -> None:
        now = datetime.now(timezone.utc)
        async with self._lock:
            for field_name, (old, new) in changes.items():
                self.config_history.append({
                    "user_id": user_id,
                    "field_name": field_name,
                    "old_value": old,
                    "new_value": new,
                    "created_at": now,
                })

    async def list_pnl_alert_configs(self, user_id: Optional[str] = None) -> List[PnLAlertConfig]:
        return [
            c for c in self._pnl_alert_configs.values()
            if user_id is None or c.user_id == user_id
        ]

    async def save_pnl_alert_config(self, alert_config: PnLAlertConfig) -> PnLAlertConfig:
        async with self._lock:
            if alert_config.id is None:
                alert_config.id = next(self._ids)
            self._pnl_alert_configs[alert_config.id] = alert_config
        return alert_config

    async def list_active_accounts(self) -> List[BinanceAccount]:
        return [a for a in self._accounts.values() if a.is_active]

    async def get_active_account(self, user_id: str) -> Optional[BinanceAccount]:
        active = [a for a in self._accounts.values() if a.user_id == user_id and a.is_active]
        return max(active, key=lambda a: a.id) if active else None

    async def save_account(self, account: BinanceAccount) -> BinanceAccount:
        async with self._lock:
            if account.id is None:
                account.id = next(self._ids)
            if account.is_active:
                for other in self._accounts.values():
                    if other.user_id == account.user_id and other.id != account.id and other.is_active:
                        other.is_active = False
            self._accounts[account.id] = account
        return account

    async def upsert_daily_pnl(self, record: DailyPnL) -> DailyPnL:
        async with self._lock:
            self._daily_pnl[(record.user_id, record.day, record.market_type)] = record
        return record

    async def existing_pnl_days(self, user_id: str, market_type: str, start: date, end: date) -> Set[date]:
        return {
            day
            for (uid, day, market), _ in self._daily_pnl.items()
            if uid == user_id and market == market_type and start <= day <= end
        }

    async def count_auth_attempts(self, identifier: str, attempt_type: str, since: datetime) -> int:
        return sum(
            1
            for ident, kind, _, ts in self._auth_attempts
            if ident == identifier and kind == attempt_type and ts >= since
        )

    async def record_auth_attempt(self, identifier: str, attempt_type: str, success: bool) -> None:
        async with self._lock:
            self._auth_attempts.append((identifier, attempt_type, success, datetime.now(timezone.utc)))

    async def put_subscription(self, subscription: Subscription) -> None:
        async with self._lock:
            self._subscriptions[subscription.id] = subscription

    async def subscriptions_expiring(self, now: datetime, until: datetime) -> List[Subscription]:
        return [
            s for s in self._subscriptions.values()
            if s.status == "active" and now < s.expires_at <= until
        ]

    async def subscriptions_expired(self, now: datetime) -> List[Subscription]:
        return [
            s for s in self._subscriptions.values()
            if s.status == "active" and s.expires_at <= now
        ]

    async def mark_subscription_inactive(self, subscription_id: Any) -> None:
        async with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is not None:
                subscription.status = "inactive"
