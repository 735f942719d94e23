import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.polls = Counter('account_polls_total', 'Account polls by outcome', ['outcome'])
        self.poll_latency = Histogram('account_poll_latency_seconds', 'Time to fetch one account snapshot')
        self.stale_polls = Counter('account_polls_stale_total', 'Poll results discarded because a newer one was applied')
        self.exchange_errors = Counter('exchange_errors_total', 'Exchange client failures', ['kind'])

        self.account_balance = Gauge('account_balance', 'Total futures wallet balance', ['user'])
        self.loss_percent = Gauge('account_loss_percent', 'Loss versus initial balance, percent', ['user'])
        self.risk_level = Gauge('account_risk_level', 'Risk level 0=none..4=emergency', ['user'])

        self.alerts_recorded = Counter('alerts_recorded_total', 'Alert rows created', ['type'])
        self.alerts_deduplicated = Counter('alerts_deduplicated_total', 'Alerts suppressed by the daily unique key', ['type'])
        self.alarm_active = Gauge('alarm_active', 'Alarm state 0=idle 1=triggered 2=playing', ['user'])

        self.kill_switch_triggers = Counter('kill_switch_triggers_total', 'Total kill switch triggers', ['reason'])
        self.kill_switch_orders = Counter('kill_switch_orders_total', 'Kill switch close orders', ['outcome'])

        self.reconciliation_days = Counter('pnl_reconciliation_days_total', 'Daily PnL days reconciled', ['outcome'])
        self.renewal_notifications = Counter('renewal_notifications_total', 'Subscription renewal notices', ['kind'])
        self.rate_limit_denials = Counter('rate_limit_denials_total', 'Denied rate-limited attempts', ['attempt_type'])

    def record_poll(self, outcome: str, latency_seconds: Optional[float] = None):
        self.polls.labels(outcome=outcome).inc()
        if latency_seconds is not None:
            self.poll_latency.observe(latency_seconds)

    def record_stale_poll(self):
        self.stale_polls.inc()

    def record_exchange_error(self, kind: str):
        self.exchange_errors.labels(kind=kind).inc()

    def update_account(self, user_id: str, balance: float, loss_percent: float, level: int):
        self.account_balance.labels(user=user_id).set(balance)
        self.loss_percent.labels(user=user_id).set(loss_percent)
        self.risk_level.labels(user=user_id).set(level)

    def record_alert(self, alert_type: str, created: bool):
        if created:
            self.alerts_recorded.labels(type=alert_type).inc()
        else:
            self.alerts_deduplicated.labels(type=alert_type).inc()

    def update_alarm(self, user_id: str, state: str):
        value = {'idle': 0, 'triggered': 1, 'playing': 2}.get(state, 0)
        self.alarm_active.labels(user=user_id).set(value)

    def record_kill_switch(self, reason: str):
        self.kill_switch_triggers.labels(reason=reason).inc()

    def record_kill_switch_order(self, ok: bool):
        self.kill_switch_orders.labels(outcome='closed' if ok else 'failed').inc()

    def record_reconciliation_day(self, ok: bool):
        self.reconciliation_days.labels(outcome='ok' if ok else 'failed').inc()

    def record_renewal_notification(self, kind: str):
        self.renewal_notifications.labels(kind=kind).inc()

    def record_rate_limit_denial(self, attempt_type: str):
        self.rate_limit_denials.labels(attempt_type=attempt_type).inc()


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
