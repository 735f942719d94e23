import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from alarm.audio import create_audio_session
from alarm.player import AlarmPlayer
from alarm.tones import DEFAULT_CYCLE_S, DEFAULT_SAMPLE_RATE
from api.alerts import alert_webhook
from api.metrics import metrics, start_metrics_server
from config import config
from monitoring.async_utils import drain_background, run_tasks_with_cleanup
from monitoring.event_bus import NotificationBus
from monitoring.logging_utils import setup_logging
from orchestration.pnl_alerts import PnLAlertChecker
from orchestration.poller import LivePoller, NotificationListener
from orchestration.reconciliation import DailyPnLReconciler, SyncProgress
from orchestration.renewals import RenewalSweep
from orchestration.scheduler import SyncScheduler
from risk.evaluator import ThresholdEvaluator
from risk.kill_switch import KillSwitchExecutor, KillSwitchReport
from risk.models import AccountSnapshot, AlertRecord, AlertType, PnLAlertConfig, SirenType, utc_today
from risk.pnl_alerts import PnLAlertHit
from risk.settings import SettingsService
from security.credentials import CredentialVault
from security.rate_limit import RateLimitGate
from store.base import AlertStore
from store.factory import create_store


logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Awaitable[Any]]

TEST_ALERT_COPY = {
    AlertType.GAIN: (
        "TEST: gain alert",
        "This is a gain alarm test. The coin sound keeps playing until you stop it.",
    ),
    AlertType.CRITICAL_LOSS: (
        "TEST: critical loss alert",
        "This is a loss alarm test. The siren keeps playing until you stop the alarm.",
    ),
}


@dataclass
class MonitorSession:
    user_id: str
    alarm: AlarmPlayer
    poller: Optional[LivePoller] = None
    listener: Optional[NotificationListener] = None

    @property
    def monitoring(self) -> bool:
        return self.poller is not None and self.poller.running

    def status(self) -> Dict[str, Any]:
        poller = self.poller
        return {
            "user_id": self.user_id,
            "monitoring": self.monitoring,
            "poller": poller.status() if poller else None,
            "alarm": self.alarm.to_dict(),
            "last_snapshot": poller.last_snapshot.to_dict() if poller and poller.last_snapshot else None,
            "last_evaluation": poller.last_result.to_dict() if poller and poller.last_result else None,
        }


class MonitoringSystem:
    """Wire the store, per-user pollers and alarms, and the scheduled jobs."""
    def __init__(
        self,
        config_obj=None,
        store: Optional[AlertStore] = None,
        bus: Optional[NotificationBus] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config_obj or config
        self.alarm_cfg = self.config.section("alarm")
        self.scheduler_cfg = self.config.section("scheduler")
        self.monitoring_cfg = self.config.section("monitoring")

        self.bus = bus or NotificationBus()
        self.store = store or create_store(self.bus)
        if self.store.bus is None:
            self.store.bus = self.bus
        self.vault = CredentialVault(self.store)
        self.client_factory = client_factory or self.vault.client_for
        self.settings = SettingsService(self.store, alert_webhook)
        self.rate_limiter = RateLimitGate(self.store)
        self.evaluator = ThresholdEvaluator()
        self.kill_switch = KillSwitchExecutor(self.store)
        self.reconciler = DailyPnLReconciler(self.store, bus=self.bus)
        self.renewals = RenewalSweep(self.store)
        self.pnl_alerts = PnLAlertChecker(self.store, self.client_factory)
        self.scheduler = SyncScheduler()
        self.scheduler.add_job(
            "daily_pnl_reconciliation",
            float(self.scheduler_cfg.get("reconciliation_interval_s", 86400)),
            self.reconciler.run,
        )
        self.scheduler.add_job(
            "renewal_sweep",
            float(self.scheduler_cfg.get("renewal_interval_s", 3600)),
            self.renewals.run,
            run_on_start=True,
        )
        self.scheduler.add_job(
            "pnl_alert_check",
            float(self.scheduler_cfg.get("pnl_alert_interval_s", 300)),
            self.pnl_alerts.run,
        )

        self.audio_enabled = bool(self.alarm_cfg.get("enabled", True))
        self.sample_rate = int(self.alarm_cfg.get("sample_rate", DEFAULT_SAMPLE_RATE))
        self.cycle_s = float(self.alarm_cfg.get("cycle_duration_s", DEFAULT_CYCLE_S))
        self.default_siren = SirenType.parse(self.alarm_cfg.get("default_siren", "police"))

        self.sessions: Dict[str, MonitorSession] = {}
        self.running = False
        self._initialized = False
        self._sessions_lock = asyncio.Lock()
        self._stopped = asyncio.Event()

    async def initialize(self):
        if self._initialized:
            return
        await self.store.initialize()
        if self.monitoring_cfg.get("metrics_enabled", False):
            start_metrics_server(int(self.monitoring_cfg.get("prometheus_port", 9108)))
        self._initialized = True

    def _new_alarm(self, user_id: str) -> AlarmPlayer:
        def session_factory(sample_rate: int):
            return create_audio_session(self.bus, user_id, sample_rate, self.audio_enabled)

        def on_transition(transition):
            metrics.update_alarm(user_id, transition.to_state)
            self.bus.publish("alarm_state", user_id, dict(transition.__dict__))

        return AlarmPlayer(
            user_id,
            siren=self.default_siren,
            session_factory=session_factory,
            sample_rate=self.sample_rate,
            cycle_s=self.cycle_s,
            on_transition=on_transition,
        )

    def session_for(self, user_id: str) -> MonitorSession:
        session = self.sessions.get(user_id)
        if session is None:
            session = MonitorSession(user_id=user_id, alarm=self._new_alarm(user_id))
            self.sessions[user_id] = session
        return session

    async def start_monitoring(self, user_id: str) -> MonitorSession:
        async with self._sessions_lock:
            session = self.session_for(user_id)
            if session.monitoring:
                return session
            profile = await self.store.get_risk_profile(user_id)
            if profile is not None:
                session.alarm.siren = profile.siren_type
            session.poller = LivePoller(
                user_id,
                self.store,
                session.alarm,
                self.client_factory,
                bus=self.bus,
                evaluator=self.evaluator,
                kill_switch=self.kill_switch,
                pnl_checker=self.pnl_alerts,
            )
            session.listener = NotificationListener(user_id, self.bus, session.alarm, self.store)
            session.listener.start()
            session.poller.start()
            logger.info("Monitoring started for %s", user_id)
            return session

    async def stop_monitoring(self, user_id: str) -> bool:
        async with self._sessions_lock:
            session = self.sessions.pop(user_id, None)
            if session is None:
                return False
            await self._close_session(session)
            self.evaluator.reset(user_id)
            logger.info("Monitoring stopped for %s", user_id)
            return True

    async def _close_session(self, session: MonitorSession) -> None:
        if session.listener is not None:
            await session.listener.stop()
        if session.poller is not None:
            await session.poller.stop()
        else:
            await session.alarm.close()

    async def resume_monitoring(self, user_id: str) -> bool:
        """Resume a poller paused on a credential failure, typically after new keys were saved."""
        session = self.sessions.get(user_id)
        if session is None or session.poller is None:
            return False
        await session.poller.resume()
        return True

    async def stop_alarm(self, user_id: str) -> Dict[str, Any]:
        session = self.sessions.get(user_id)
        stopped = await session.alarm.stop("user_stop") if session else None
        acknowledged = await self.store.acknowledge_open_alerts(user_id)
        return {
            "stopped": stopped.value if stopped else None,
            "acknowledged": acknowledged,
        }

    async def test_alarm(self, user_id: str, alert_type: AlertType = AlertType.CRITICAL_LOSS) -> Dict[str, Any]:
        if alert_type not in TEST_ALERT_COPY:
            raise ValueError(f"Test alerts support gain or critical_loss, got {alert_type.value}")
        title, description = TEST_ALERT_COPY[alert_type]
        created, record = await self.store.record_alert_if_absent(
            user_id,
            alert_type,
            utc_today(),
            0.0,
            message=description,
            is_test=True,
        )
        await self.store.insert_notification(user_id, title, description, type=alert_type.value)
        session = self.session_for(user_id)
        profile = await self.store.get_risk_profile(user_id)
        triggered = await session.alarm.trigger(alert_type, profile.siren_type if profile else None)
        return {
            "alert": record.to_dict(),
            "created": created,
            "triggered": triggered,
            "alarm": session.alarm.to_dict(),
        }

    async def run_kill_switch(self, user_id: str, reason: str = "manual") -> KillSwitchReport:
        client = await self.client_factory(user_id)
        try:
            report = await self.kill_switch.flatten_all_positions(client, user_id=user_id, reason=reason)
        finally:
            await client.close()
        self.bus.publish("kill_switch", user_id, report.to_dict())
        return report

    async def account_snapshot(self, user_id: str) -> AccountSnapshot:
        session = self.sessions.get(user_id)
        if session and session.poller and session.poller.last_snapshot is not None:
            return session.poller.last_snapshot
        client = await self.client_factory(user_id)
        try:
            return await client.fetch_account_snapshot()
        finally:
            await client.close()

    async def check_pnl_alerts(self, user_id: str) -> List[PnLAlertHit]:
        profile = await self.store.get_risk_profile(user_id)
        if profile is None:
            return []
        snapshot = await self.account_snapshot(user_id)
        return await self.pnl_alerts.check(user_id, profile, snapshot)

    async def pnl_alert_configs(self, user_id: str) -> List[PnLAlertConfig]:
        return await self.store.list_pnl_alert_configs(user_id)

    async def sync_pnl(self, user_id: str, window_days: Optional[int] = None) -> SyncProgress:
        return await self.reconciler.sync_user(user_id, window_days)

    async def alert_history(self, user_id: str, limit: int = 50) -> List[AlertRecord]:
        return await self.store.list_alerts(user_id, limit)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "sessions": {uid: s.status() for uid, s in self.sessions.items()},
            "jobs": self.scheduler.status(),
            "subscribers": self.bus.subscriber_count(),
        }

    async def start(self):
        await self.initialize()
        self.running = True
        self._stopped.clear()
        self.scheduler.start()
        logger.info("Monitoring system started")

    async def serve_forever(self):
        await self.start()
        waiter = asyncio.create_task(self._stopped.wait())

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup([waiter], cleanup=_cleanup)

    async def stop(self):
        if not self.running and not self.sessions:
            return
        self.running = False
        await self.scheduler.stop()
        async with self._sessions_lock:
            sessions, self.sessions = list(self.sessions.values()), {}
        for session in sessions:
            try:
                await self._close_session(session)
            except Exception as exc:
                logger.error("Closing session for %s failed: %s", session.user_id, exc)
        await drain_background()
        await self.store.close()
        self._initialized = False
        self._stopped.set()
        logger.info("Monitoring system stopped")


async def main():
    system = MonitoringSystem(config)
    try:
        await system.serve_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


def cli():
    setup_logging()
    asyncio.run(main())

if __name__ == "__main__":
    cli()
