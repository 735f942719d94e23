import abc
import logging
from datetime import date, datetime
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


logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the backing store cannot complete a request."""


class AlertStore(abc.ABC):
    """Persistence boundary for alerts, notifications and the settings rows the monitor reads.

    ``record_alert_if_absent`` and ``insert_notification_once`` are the
    dedup primitives: both rely on a unique key and report a conflict as
    ``created=False`` rather than raising. Test alerts carry their own key
    so they never stand in for a real alert of the same day.
    """

    def __init__(self, bus: Optional[NotificationBus] = None):
        self.bus = bus

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _publish_alert(self, record: AlertRecord) -> None:
        if self.bus is not None:
            self.bus.publish("alert", record.user_id, record.to_dict())

    def _publish_notification(self, notification: Notification) -> None:
        if self.bus is not None:
            self.bus.publish("notification", notification.user_id, notification.to_dict())

    # alerts

    @abc.abstractmethod
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
        ...

    @abc.abstractmethod
    async def acknowledge_alert(self, record_id: int) -> Optional[AlertRecord]:
        ...

    @abc.abstractmethod
    async def acknowledge_open_alerts(self, user_id: str) -> int:
        ...

    @abc.abstractmethod
    async def list_alerts(self, user_id: str, limit: int = 50) -> List[AlertRecord]:
        ...

    @abc.abstractmethod
    async def clear_test_alerts(self, user_id: str) -> int:
        ...

    # notifications

    @abc.abstractmethod
    async def insert_notification(
        self,
        user_id: str,
        title: str,
        description: str,
        type: str = "info",
    ) -> Notification:
        ...

    @abc.abstractmethod
    async def insert_notification_once(
        self,
        user_id: str,
        dedup_key: str,
        day: date,
        title: str,
        description: str,
        type: str = "info",
    ) -> Tuple[bool, Optional[Notification]]:
        ...

    @abc.abstractmethod
    async def mark_notification_read(self, notification_id: int) -> bool:
        ...

    @abc.abstractmethod
    async def list_notifications(self, user_id: str, limit: int = 50) -> List[Notification]:
        ...

    # risk settings

    @abc.abstractmethod
    async def get_risk_profile(self, user_id: str) -> Optional[RiskProfile]:
        ...

    @abc.abstractmethod
    async def save_risk_profile(self, profile: RiskProfile) -> RiskProfile:
        ...

    @abc.abstractmethod
    async def record_config_history(self, user_id: str, changes: Dict[str, Tuple[Any, Any]]) -> None:
        ...

    @abc.abstractmethod
    async def list_pnl_alert_configs(self, user_id: Optional[str] = None) -> List[PnLAlertConfig]:
        ...

    @abc.abstractmethod
    async def save_pnl_alert_config(self, alert_config: PnLAlertConfig) -> PnLAlertConfig:
        ...

    # exchange accounts

    @abc.abstractmethod
    async def list_active_accounts(self) -> List[BinanceAccount]:
        ...

    @abc.abstractmethod
    async def get_active_account(self, user_id: str) -> Optional[BinanceAccount]:
        ...

    @abc.abstractmethod
    async def save_account(self, account: BinanceAccount) -> BinanceAccount:
        """Insert or update; a newly active account retires the user's other active ones."""

    # daily pnl

    @abc.abstractmethod
    async def upsert_daily_pnl(self, record: DailyPnL) -> DailyPnL:
        ...

    @abc.abstractmethod
    async def existing_pnl_days(self, user_id: str, market_type: str, start: date, end: date) -> Set[date]:
        ...

    # auth attempts

    @abc.abstractmethod
    async def count_auth_attempts(self, identifier: str, attempt_type: str, since: datetime) -> int:
        ...

    @abc.abstractmethod
    async def record_auth_attempt(self, identifier: str, attempt_type: str, success: bool) -> None:
        ...

    # subscriptions

    @abc.abstractmethod
    async def subscriptions_expiring(self, now: datetime, until: datetime) -> List[Subscription]:
        ...

    @abc.abstractmethod
    async def subscriptions_expired(self, now: datetime) -> List[Subscription]:
        ...

    @abc.abstractmethod
    async def mark_subscription_inactive(self, subscription_id: Any) -> None:
        ...
