import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import asyncpg

from config import config
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
from store.base import AlertStore, StoreError


logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_ALERT_COLUMNS = (
    "id, user_id, alert_type, percent_at_trigger, alert_day, message, balance_at_alert, "
    "is_test, acknowledged, acknowledged_at, created_at"
)
_NOTIFICATION_COLUMNS = "id, user_id, title, description, type, is_read, dedup_key, dedup_day, created_at"


class PostgresStore(AlertStore):
    def __init__(self, bus: Optional[NotificationBus] = None, pool: Optional[asyncpg.Pool] = None):
        super().__init__(bus)
        self.pool = pool

    async def initialize(self, apply_schema: bool = True) -> None:
        if self.pool is None:
            db_config = config.database
            self.pool = await asyncpg.create_pool(
                host=db_config['host'],
                port=int(db_config['port']),
                database=db_config['database'],
                user=db_config['user'],
                password=db_config.get('password'),
                min_size=int(db_config.get('min_pool_size', 2)),
                max_size=int(db_config.get('max_pool_size', 10)),
            )
        if apply_schema:
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA_PATH.read_text())

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StoreError("PostgresStore used before initialize()")
        return self.pool

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
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''INSERT INTO loss_alert_history
                       (user_id, alert_type, percent_at_trigger, alert_day, message, balance_at_alert, is_test)
                   VALUES ($1, $2, $3, $4, $5, $6, $7)
                   ON CONFLICT (user_id, alert_type, alert_day, is_test) DO NOTHING
                   RETURNING {_ALERT_COLUMNS}''',
                user_id,
                alert_type.value,
                percent_at_trigger,
                day,
                message,
                balance_at_alert,
                is_test,
            )
            if row is not None:
                record = AlertRecord.from_row(dict(row))
                self._publish_alert(record)
                return True, record
            existing = await conn.fetchrow(
                f'''SELECT {_ALERT_COLUMNS} FROM loss_alert_history
                   WHERE user_id = $1 AND alert_type = $2 AND alert_day = $3 AND is_test = $4''',
                user_id,
                alert_type.value,
                day,
                is_test,
            )
        if existing is None:
            # Conflicting row removed between the insert and the select
            raise StoreError(f"alert row for {user_id}/{alert_type.value}/{day} vanished")
        return False, AlertRecord.from_row(dict(existing))

    async def acknowledge_alert(self, record_id: int) -> Optional[AlertRecord]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''UPDATE loss_alert_history
                   SET acknowledged = TRUE,
                       acknowledged_at = COALESCE(acknowledged_at, now())
                   WHERE id = $1
                   RETURNING {_ALERT_COLUMNS}''',
                record_id,
            )
        return AlertRecord.from_row(dict(row)) if row else None

    async def acknowledge_open_alerts(self, user_id: str) -> int:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                '''UPDATE loss_alert_history
                   SET acknowledged = TRUE, acknowledged_at = now()
                   WHERE user_id = $1 AND acknowledged = FALSE''',
                user_id,
            )
        return _affected_rows(status)

    async def list_alerts(self, user_id: str, limit: int = 50) -> List[AlertRecord]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f'''SELECT {_ALERT_COLUMNS} FROM loss_alert_history
                   WHERE user_id = $1
                   ORDER BY created_at DESC, id DESC
                   LIMIT $2''',
                user_id,
                limit,
            )
        return [AlertRecord.from_row(dict(r)) for r in rows]

    async def clear_test_alerts(self, user_id: str) -> int:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                'DELETE FROM loss_alert_history WHERE user_id = $1 AND is_test = TRUE',
                user_id,
            )
        return _affected_rows(status)

    async def insert_notification(
        self,
        user_id: str,
        title: str,
        description: str,
        type: str = "info",
    ) -> Notification:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''INSERT INTO notification_history (user_id, title, description, type)
                   VALUES ($1, $2, $3, $4)
                   RETURNING {_NOTIFICATION_COLUMNS}''',
                user_id,
                title,
                description,
                type,
            )
        notification = Notification.from_row(dict(row))
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
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''INSERT INTO notification_history (user_id, title, description, type, dedup_key, dedup_day)
                   VALUES ($1, $2, $3, $4, $5, $6)
                   ON CONFLICT (user_id, dedup_key, dedup_day) DO NOTHING
                   RETURNING {_NOTIFICATION_COLUMNS}''',
                user_id,
                title,
                description,
                type,
                dedup_key,
                day,
            )
            if row is None:
                existing = await conn.fetchrow(
                    f'''SELECT {_NOTIFICATION_COLUMNS} FROM notification_history
                       WHERE user_id = $1 AND dedup_key = $2 AND dedup_day = $3''',
                    user_id,
                    dedup_key,
                    day,
                )
                return False, Notification.from_row(dict(existing)) if existing else None
        notification = Notification.from_row(dict(row))
        self._publish_notification(notification)
        return True, notification

    async def mark_notification_read(self, notification_id: int) -> bool:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                'UPDATE notification_history SET is_read = TRUE WHERE id = $1',
                notification_id,
            )
        return _affected_rows(status) > 0

    async def list_notifications(self, user_id: str, limit: int = 50) -> List[Notification]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f'''SELECT {_NOTIFICATION_COLUMNS} FROM notification_history
                   WHERE user_id = $1
                   ORDER BY created_at DESC, id DESC
                   LIMIT $2''',
                user_id,
                limit,
            )
        return [Notification.from_row(dict(r)) for r in rows]

    async def get_risk_profile(self, user_id: str) -> Optional[RiskProfile]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM risk_settings WHERE user_id = $1', user_id)
        return RiskProfile.from_row(dict(row)) if row else None

    async def save_risk_profile(self, profile: RiskProfile) -> RiskProfile:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO risk_settings
                       (user_id, initial_balance, loss_threshold_percent, gain_threshold_percent,
                        loss_enabled, gain_enabled, siren_type, kill_switch_enabled, updated_at)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, now())
                   ON CONFLICT (user_id) DO UPDATE SET
                       initial_balance = EXCLUDED.initial_balance,
                       loss_threshold_percent = EXCLUDED.loss_threshold_percent,
                       gain_threshold_percent = EXCLUDED.gain_threshold_percent,
                       loss_enabled = EXCLUDED.loss_enabled,
                       gain_enabled = EXCLUDED.gain_enabled,
                       siren_type = EXCLUDED.siren_type,
                       kill_switch_enabled = EXCLUDED.kill_switch_enabled,
                       updated_at = now()''',
                profile.user_id,
                profile.initial_balance,
                profile.loss_threshold_percent,
                profile.gain_threshold_percent,
                profile.loss_enabled,
                profile.gain_enabled,
                profile.siren_type.value,
                profile.kill_switch_enabled,
            )
        return profile

    async def record_config_history(self, user_id: str, changes: Dict[str, Tuple[Any, Any]]) -> None:
        if not changes:
            return
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                '''INSERT INTO alert_config_history (user_id, field_name, old_value, new_value)
                   VALUES ($1, $2, $3, $4)''',
                [
                    (user_id, name, None if old is None else str(old), None if new is None else str(new))
                    for name, (old, new) in changes.items()
                ],
            )

    async def list_pnl_alert_configs(self, user_id: Optional[str] = None) -> List[PnLAlertConfig]:
        pool = self._require_pool()
        query = '''SELECT id, user_id, alert_type, trigger_type, threshold, enabled, sound_enabled
                   FROM pnl_alert_configs'''
        async with pool.acquire() as conn:
            if user_id is None:
                rows = await conn.fetch(query + ' ORDER BY id')
            else:
                rows = await conn.fetch(query + ' WHERE user_id = $1 ORDER BY id', user_id)
        return [PnLAlertConfig.from_row(dict(r)) for r in rows]

    async def save_pnl_alert_config(self, alert_config: PnLAlertConfig) -> PnLAlertConfig:
        pool = self._require_pool()
        values = (
            alert_config.user_id,
            alert_config.alert_type,
            alert_config.trigger_type,
            alert_config.threshold,
            alert_config.enabled,
            alert_config.sound_enabled,
        )
        async with pool.acquire() as conn:
            if alert_config.id is None:
                alert_config.id = await conn.fetchval(
                    '''INSERT INTO pnl_alert_configs
                           (user_id, alert_type, trigger_type, threshold, enabled, sound_enabled)
                       VALUES ($1, $2, $3, $4, $5, $6) RETURNING id''',
                    *values,
                )
            else:
                await conn.execute(
                    '''UPDATE pnl_alert_configs
                       SET user_id = $2, alert_type = $3, trigger_type = $4, threshold = $5,
                           enabled = $6, sound_enabled = $7, updated_at = NOW()
                       WHERE id = $1''',
                    alert_config.id,
                    *values,
                )
        return alert_config

    async def list_active_accounts(self) -> List[BinanceAccount]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT id, user_id, account_name, api_key, api_secret, is_active
                   FROM binance_accounts WHERE is_active = TRUE ORDER BY id'''
            )
        return [BinanceAccount(**dict(r)) for r in rows]

    async def get_active_account(self, user_id: str) -> Optional[BinanceAccount]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                '''SELECT id, user_id, account_name, api_key, api_secret, is_active
                   FROM binance_accounts
                   WHERE user_id = $1 AND is_active = TRUE
                   ORDER BY id DESC LIMIT 1''',
                user_id,
            )
        return BinanceAccount(**dict(row)) if row else None

    async def save_account(self, account: BinanceAccount) -> BinanceAccount:
        pool = self._require_pool()
        async with pool.acquire() as conn, conn.transaction():
            if account.is_active:
                await conn.execute(
                    '''UPDATE binance_accounts SET is_active = FALSE
                       WHERE user_id = $1 AND is_active = TRUE AND id IS DISTINCT FROM $2''',
                    account.user_id,
                    account.id,
                )
            if account.id is None:
                account.id = await conn.fetchval(
                    '''INSERT INTO binance_accounts (user_id, account_name, api_key, api_secret, is_active)
                       VALUES ($1, $2, $3, $4, $5) RETURNING id''',
                    account.user_id,
                    account.account_name,
                    account.api_key,
                    account.api_secret,
                    account.is_active,
                )
            else:
                await conn.execute(
                    '''UPDATE binance_accounts
                       SET account_name = $2, api_key = $3, api_secret = $4, is_active = $5
                       WHERE id = $1''',
                    account.id,
                    account.account_name,
                    account.api_key,
                    account.api_secret,
                    account.is_active,
                )
        return account

    async def upsert_daily_pnl(self, record: DailyPnL) -> DailyPnL:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO daily_pnl (user_id, date, market_type, pnl_usd, pnl_percentage)
                   VALUES ($1, $2, $3, $4, $5)
                   ON CONFLICT (user_id, date, market_type) DO UPDATE SET
                       pnl_usd = EXCLUDED.pnl_usd,
                       pnl_percentage = EXCLUDED.pnl_percentage,
                       updated_at = now()''',
                record.user_id,
                record.day,
                record.market_type,
                record.pnl_usd,
                record.pnl_percentage,
            )
        return record

    async def existing_pnl_days(self, user_id: str, market_type: str, start: date, end: date) -> Set[date]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT date FROM daily_pnl
                   WHERE user_id = $1 AND market_type = $2 AND date BETWEEN $3 AND $4''',
                user_id,
                market_type,
                start,
                end,
            )
        return {r['date'] for r in rows}

    async def count_auth_attempts(self, identifier: str, attempt_type: str, since: datetime) -> int:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            count = await conn.fetchval(
                '''SELECT count(*) FROM auth_attempts
                   WHERE identifier = $1 AND attempt_type = $2 AND created_at >= $3''',
                identifier,
                attempt_type,
                since,
            )
        return int(count or 0)

    async def record_auth_attempt(self, identifier: str, attempt_type: str, success: bool) -> None:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                'INSERT INTO auth_attempts (identifier, attempt_type, success) VALUES ($1, $2, $3)',
                identifier,
                attempt_type,
                success,
            )

    async def subscriptions_expiring(self, now: datetime, until: datetime) -> List[Subscription]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT id, user_id, plan_type, status, expires_at, auto_renew
                   FROM subscriptions
                   WHERE status = 'active' AND expires_at > $1 AND expires_at <= $2''',
                now,
                until,
            )
        return [Subscription(**dict(r)) for r in rows]

    async def subscriptions_expired(self, now: datetime) -> List[Subscription]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                '''SELECT id, user_id, plan_type, status, expires_at, auto_renew
                   FROM subscriptions
                   WHERE status = 'active' AND expires_at <= $1''',
                now,
            )
        return [Subscription(**dict(r)) for r in rows]

    async def mark_subscription_inactive(self, subscription_id: Any) -> None:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE subscriptions SET status = 'inactive' WHERE id = $1",
                subscription_id,
            )


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 3"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
