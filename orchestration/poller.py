import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from alarm.player import AlarmPlayer
from api.alerts import alert_webhook
from api.metrics import metrics
from config import config
from ingest.binance_rest import AuthError, ExchangeError, RateLimitError, TransientError
from monitoring.async_utils import submit_background
from monitoring.event_bus import NotificationBus
from risk.evaluator import ThresholdEvaluator
from risk.kill_switch import KillSwitchExecutor
from risk.models import AccountSnapshot, AlertType, EvaluationResult, RiskLevel, RiskProfile, utc_today
from security.credentials import CredentialsMissing
from security.encryption import DecryptionError
from store.base import AlertStore


logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Awaitable[Any]]

CREDENTIAL_ERRORS = (AuthError, DecryptionError, CredentialsMissing)

# Notification types that sound the local alarm, by the alert they play
SERVER_ALERT_TYPES = {
    "critical_loss": AlertType.CRITICAL_LOSS,
    "gain": AlertType.GAIN,
    "pnl_loss_alert": AlertType.CRITICAL_LOSS,
    "pnl_gain_alert": AlertType.GAIN,
}


class PollerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class LivePoller:
    """Fast account poll for one user.

    Each tick spawns a sequence-numbered fetch; results are applied in
    sequence order and older results arriving late are dropped. Credential
    failures pause the loop until :meth:`resume`.
    """

    def __init__(
        self,
        user_id: str,
        store: AlertStore,
        alarm: AlarmPlayer,
        client_factory: ClientFactory,
        bus: Optional[NotificationBus] = None,
        evaluator: Optional[ThresholdEvaluator] = None,
        kill_switch: Optional[KillSwitchExecutor] = None,
        pnl_checker: Optional[Any] = None,
        interval_s: Optional[float] = None,
        max_inflight: Optional[int] = None,
        rate_limit_backoff_s: Optional[float] = None,
    ):
        sched_cfg = config.section("scheduler")
        self.user_id = user_id
        self.store = store
        self.alarm = alarm
        self.client_factory = client_factory
        self.bus = bus
        self.evaluator = evaluator or ThresholdEvaluator()
        self.kill_switch = kill_switch or KillSwitchExecutor(store)
        self.pnl_checker = pnl_checker
        self.critical_margin_ratio = float(config.section("risk").get("critical_margin_ratio", 80))
        self.interval_s = float(interval_s if interval_s is not None else sched_cfg.get("live_poll_interval_s", 5))
        self.max_inflight = int(max_inflight if max_inflight is not None else sched_cfg.get("max_inflight_polls", 2))
        self.rate_limit_backoff_s = float(
            rate_limit_backoff_s if rate_limit_backoff_s is not None else sched_cfg.get("rate_limit_backoff_s", 30)
        )

        self.state = PollerState.IDLE
        self.pause_reason: Optional[str] = None
        self.backoff_until = 0.0
        self.last_snapshot: Optional[AccountSnapshot] = None
        self.last_result: Optional[EvaluationResult] = None
        self.last_error: Optional[str] = None

        self._seq = 0
        self._last_applied_seq = 0
        self._inflight: Set[asyncio.Task] = set()
        self._apply_lock = asyncio.Lock()
        self._resume_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._client: Any = None
        self._kill_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.state in (PollerState.RUNNING, PollerState.PAUSED)

    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self.state = PollerState.RUNNING
            self._resume_event.set()
            self._loop_task = asyncio.create_task(self._run())
        return self._loop_task

    async def _run(self) -> None:
        try:
            while self.running:
                if self.state is PollerState.PAUSED:
                    await self._resume_event.wait()
                    continue
                if time.monotonic() < self.backoff_until:
                    logger.debug("Poll for %s skipped, rate limited", self.user_id)
                elif len(self._inflight) >= self.max_inflight:
                    logger.warning("Poll for %s skipped, %s fetches still in flight", self.user_id, len(self._inflight))
                    metrics.record_poll("skipped")
                else:
                    self._spawn_poll()
                await asyncio.sleep(self.interval_s)
        except asyncio.CancelledError:
            pass

    def _spawn_poll(self) -> asyncio.Task:
        self._seq += 1
        task = asyncio.create_task(self._poll(self._seq))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def poll_once(self) -> bool:
        """Run one fetch/apply cycle inline. Returns True when the result was applied."""
        return await self._spawn_poll()

    async def _get_client(self) -> Any:
        if self._client is None:
            self._client = await self.client_factory(self.user_id)
        return self._client

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.close()
            except Exception as exc:
                logger.warning("Closing exchange client for %s failed: %s", self.user_id, exc)

    async def _poll(self, seq: int) -> bool:
        started = time.perf_counter()
        try:
            client = await self._get_client()
            snapshot = await client.fetch_account_snapshot()
        except asyncio.CancelledError:
            raise
        except CREDENTIAL_ERRORS as exc:
            metrics.record_exchange_error("auth")
            await self.pause(type(exc).__name__, str(exc))
            return False
        except RateLimitError as exc:
            delay = exc.retry_after if exc.retry_after else self.rate_limit_backoff_s
            self.backoff_until = time.monotonic() + delay
            self.last_error = str(exc)
            metrics.record_exchange_error("rate_limit")
            logger.warning("Rate limited polling %s; backing off %.0fs", self.user_id, delay)
            return False
        except TransientError as exc:
            self.last_error = str(exc)
            metrics.record_exchange_error("transient")
            logger.warning("Transient poll failure for %s: %s", self.user_id, exc)
            return False
        except ExchangeError as exc:
            self.last_error = str(exc)
            metrics.record_exchange_error("api")
            logger.error("Exchange error polling %s: %s", self.user_id, exc)
            return False
        except Exception as exc:
            self.last_error = str(exc)
            metrics.record_poll("error")
            logger.error("Poll for %s failed: %s", self.user_id, exc)
            return False

        metrics.record_poll("ok", time.perf_counter() - started)
        try:
            return await self._apply(seq, snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.last_error = str(exc)
            logger.error("Applying poll result for %s failed: %s", self.user_id, exc)
            return False

    async def _apply(self, seq: int, snapshot: AccountSnapshot) -> bool:
        async with self._apply_lock:
            if seq <= self._last_applied_seq:
                metrics.record_stale_poll()
                logger.debug("Discarding stale poll %s for %s (applied %s)", seq, self.user_id, self._last_applied_seq)
                return False
            self._last_applied_seq = seq
            self.last_snapshot = snapshot
            self.last_error = None

            profile = await self.store.get_risk_profile(self.user_id)
            result = None
            if profile is not None:
                previous_level = self.evaluator.latch_for(self.user_id).last_level
                result = self.evaluator.evaluate(profile, snapshot)
                self.last_result = result
                metrics.update_account(self.user_id, snapshot.total_balance, result.loss_percent, result.level.value)
                await self._handle_result(profile, snapshot, result, previous_level)
                await self._check_pnl_alerts(profile, snapshot)

            self._publish("snapshot", {
                "seq": seq,
                "account": snapshot.to_dict(),
                "critical_positions": [p.to_dict() for p in snapshot.critical_positions(self.critical_margin_ratio)],
                "evaluation": result.to_dict() if result else None,
                "alarm": self.alarm.to_dict(),
            })
            return True

    async def _handle_result(
        self,
        profile: RiskProfile,
        snapshot: AccountSnapshot,
        result: EvaluationResult,
        previous_level: RiskLevel,
    ) -> None:
        if result.skipped:
            return
        if result.should_alert and result.alert_type is not None:
            created, record = await self.store.record_alert_if_absent(
                self.user_id,
                result.alert_type,
                utc_today(),
                result.percent_at_trigger,
                message=_alert_message(result),
                balance_at_alert=snapshot.total_balance,
            )
            metrics.record_alert(result.alert_type.value, created)
            if not created:
                logger.info("Alert %s for %s already recorded today (id=%s)", result.alert_type.value, self.user_id, record.id)
            await self.alarm.trigger(result.alert_type, profile.siren_type)

        for cleared in result.cleared_alerts:
            await self.alarm.condition_cleared(cleared)
        metrics.update_alarm(self.user_id, self.alarm.state.value)

        if (
            profile.kill_switch_enabled
            and result.level is RiskLevel.EMERGENCY
            and previous_level is not RiskLevel.EMERGENCY
            and (self._kill_task is None or self._kill_task.done())
        ):
            self._kill_task = submit_background(self._run_kill_switch(), f"kill-switch-{self.user_id}")

    async def _check_pnl_alerts(self, profile: RiskProfile, snapshot: AccountSnapshot) -> None:
        if self.pnl_checker is None:
            return
        try:
            await self.pnl_checker.check(self.user_id, profile, snapshot)
        except Exception as exc:
            logger.error("PnL alert check for %s failed: %s", self.user_id, exc)

    async def _run_kill_switch(self) -> None:
        # Owned by this run, independent of the polling client
        client = await self.client_factory(self.user_id)
        try:
            report = await self.kill_switch.flatten_all_positions(client, user_id=self.user_id, reason="emergency_level")
        finally:
            try:
                await client.close()
            except Exception as exc:
                logger.warning("Closing kill switch client for %s failed: %s", self.user_id, exc)
        self._publish("kill_switch", report.to_dict())

    async def pause(self, reason: str, detail: str = "") -> None:
        if self.state is PollerState.PAUSED:
            return
        self.state = PollerState.PAUSED
        self.pause_reason = reason
        self.last_error = detail or reason
        self._resume_event.clear()
        await self._drop_client()
        logger.error("Polling paused for %s: %s %s", self.user_id, reason, detail)
        self._publish("reconfigure_credentials", {"reason": reason, "detail": detail})
        submit_background(alert_webhook.credentials_invalid(self.user_id, detail or reason), "credentials-invalid")

    async def resume(self) -> None:
        if self.state is not PollerState.PAUSED:
            return
        await self._drop_client()
        self.state = PollerState.RUNNING
        self.pause_reason = None
        self.backoff_until = 0.0
        logger.info("Polling resumed for %s", self.user_id)
        self._resume_event.set()

    async def stop(self) -> None:
        self.state = PollerState.STOPPED
        self._resume_event.set()
        tasks = [t for t in self._inflight if not t.done()]
        if self._loop_task is not None:
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._loop_task = None
        await self._drop_client()
        await self.alarm.close()

    def _publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(event_type, self.user_id, payload)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "pause_reason": self.pause_reason,
            "last_error": self.last_error,
            "last_applied_seq": self._last_applied_seq,
            "inflight": len(self._inflight),
            "rate_limited": time.monotonic() < self.backoff_until,
        }


def _alert_message(result: EvaluationResult) -> str:
    if result.alert_type is AlertType.GAIN:
        return f"Gain of {result.gain_percent:.2f}% reached the configured target"
    return (
        f"Loss of {result.loss_percent:.2f}% is at {result.risk_limit_percent:.0f}% "
        f"of the configured limit ({result.level.label})"
    )


class NotificationListener:
    """Raises the local alarm for alerts detected elsewhere (other sessions, background jobs)."""

    def __init__(self, user_id: str, bus: NotificationBus, alarm: AlarmPlayer, store: Optional[AlertStore] = None):
        self.user_id = user_id
        self.bus = bus
        self.alarm = alarm
        self.store = store
        self._task: Optional[asyncio.Task] = None
        self._subscription = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._subscription = self.bus.subscribe(self.user_id)
            self._task = asyncio.create_task(self._run())
        return self._task

    async def _run(self) -> None:
        try:
            while True:
                event = await self._subscription.get()
                try:
                    await self.handle(event.type, event.payload)
                except Exception as exc:
                    logger.error("Notification handling for %s failed: %s", self.user_id, exc)
        except asyncio.CancelledError:
            pass
        finally:
            self._subscription.close()

    async def handle(self, event_type: str, payload: Dict[str, Any]) -> bool:
        if event_type != "notification":
            return False
        alert_type = SERVER_ALERT_TYPES.get(payload.get("type"))
        if alert_type is None:
            return False
        siren = None
        if self.store is not None:
            profile = await self.store.get_risk_profile(self.user_id)
            siren = profile.siren_type if profile else None
        return await self.alarm.trigger(alert_type, siren)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
