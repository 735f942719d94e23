import logging
import time
import aiohttp
from typing import Dict, Optional
from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    """Posts operator notices to the admin webhook, or logs them when none is set."""

    def __init__(self, url: Optional[str] = None):
        url = url if url is not None else config.section('monitoring').get('admin_webhook')
        # Unresolved ${VAR} placeholders count as disabled
        if url and not str(url).startswith('${'):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None) -> bool:
        if not self.enabled:
            logger.warning(
                "[Admin] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return False

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Admin] Webhook failed with status %s",
                            response.status,
                        )
                        return False
        except Exception as e:
            logger.error("[Admin] Webhook error: %s", e)
            return False
        return True

    async def loss_alert_disabled(self, user_id: str, threshold_percent: float):
        await self.send_alert(
            'loss_alert_disabled',
            f'User {user_id} disabled the loss alert (threshold was {threshold_percent:.1f}%)',
            'warning',
            {'user_id': user_id, 'threshold_percent': threshold_percent}
        )

    async def kill_switch_alert(self, user_id: str, reason: str, closed: int, failed: int):
        await self.send_alert(
            'kill_switch',
            f'Kill switch for {user_id} ({reason}): {closed} closed, {failed} failed',
            'critical',
            {'user_id': user_id, 'reason': reason, 'closed': closed, 'failed': failed}
        )

    async def credentials_invalid(self, user_id: str, detail: str):
        await self.send_alert(
            'credentials_invalid',
            f'Exchange credentials rejected for {user_id}',
            'warning',
            {'user_id': user_id, 'detail': detail}
        )

    async def reconciliation_alert(self, failed: int, total: int):
        await self.send_alert(
            'pnl_reconciliation',
            f'Daily PnL reconciliation finished with {failed}/{total} failed days',
            'warning',
            {'failed': failed, 'total': total}
        )


alert_webhook = AlertWebhook()
