import asyncio
import sys
import time

sys.path.insert(0, '.')

from alarm.player import AlarmPlayer, AlarmState
from ingest.account_client import OrderAck
from ingest.binance_rest import AuthError, RateLimitError, TransientError
from monitoring.event_bus import NotificationBus
from orchestration.pnl_alerts import PnLAlertChecker
from orchestration.poller import LivePoller, NotificationListener, PollerState
from risk.evaluator import ThresholdEvaluator
from risk.models import AccountSnapshot, AlertType, PnLAlertConfig, Position, RiskLevel, RiskProfile
from security.credentials import CredentialVault, CredentialsMissing
from security.encryption import CredentialCipher
from store.memory import MemoryStore


class FakeAccountClient:
    """Returns queued snapshots; an Exception in the queue is raised instead."""

    def __init__(self, *responses, positions=()):
        self.responses = list(responses)
        self.positions = list(positions)
        self.orders = []
        self.calls = 0
        self.closed = False

    async def fetch_account_snapshot(self):
        self.calls += 1
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Gate):
            await item.event.wait()
            item = item.snapshot
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_open_positions(self):
        return list(self.positions)

    async def place_market_order(self, symbol, side, quantity, reduce_only=True):
        self.orders.append((symbol, side, quantity))
        return OrderAck(symbol=symbol, side=side, quantity=quantity, status="FILLED", exchange_order_id=1)

    async def close(self):
        self.closed = True


def _snapshot(balance, positions=()):
    return AccountSnapshot(total_balance=balance, available_balance=balance, positions=list(positions))


class Gate:
    """A snapshot held back until released."""

    def __init__(self, balance):
        self.event = asyncio.Event()
        self.snapshot = _snapshot(balance)

    def set(self):
        self.event.set()


async def _setup(client, bus=None, **profile_overrides):
    store = MemoryStore(bus)
    profile = dict(user_id='u1', initial_balance=1000.0, loss_threshold_percent=5.0)
    profile.update(profile_overrides)
    await store.save_risk_profile(RiskProfile(**profile))
    alarm = AlarmPlayer('u1', sample_rate=8000, cycle_s=0.05, chunk_s=0.01)
    factory_calls = []

    async def client_factory(user_id):
        factory_calls.append(user_id)
        if isinstance(client, Exception):
            raise client
        return client

    poller = LivePoller(
        'u1',
        store,
        alarm,
        client_factory,
        bus=bus,
        evaluator=ThresholdEvaluator(hysteresis_pct=1.0),
        interval_s=0.01,
        max_inflight=2,
        rate_limit_backoff_s=7,
    )
    poller.factory_calls = factory_calls
    return store, alarm, poller


def test_six_percent_loss_records_once_and_plays_alarm():
    async def _run():
        client = FakeAccountClient(_snapshot(940.0))
        store, alarm, poller = await _setup(client)

        assert await poller.poll_once()
        assert poller.last_result.loss_percent == 6.0
        assert poller.last_result.risk_limit_percent == 120.0
        assert poller.last_result.level.label == 'emergency'
        assert await alarm.wait_until_playing(1.0)

        assert await poller.poll_once()
        alerts = await store.list_alerts('u1')
        assert len(alerts) == 1
        assert alerts[0].alert_type is AlertType.EMERGENCY
        assert alerts[0].percent_at_trigger == 6.0
        assert alerts[0].balance_at_alert == 940.0
        states = [(t.from_state, t.to_state) for t in alarm.transitions]
        assert states == [('idle', 'triggered'), ('triggered', 'playing')]

        await poller.stop()
        assert alarm.state is AlarmState.IDLE
        assert client.closed

    asyncio.run(_run())


def test_below_threshold_leaves_alarm_idle():
    async def _run():
        store, alarm, poller = await _setup(FakeAccountClient(_snapshot(970.0)))
        assert await poller.poll_once()
        assert not poller.last_result.should_alert
        assert await store.list_alerts('u1') == []
        assert alarm.state is AlarmState.IDLE

    asyncio.run(_run())


def test_escalation_records_each_level_and_interrupts_alarm():
    async def _run():
        client = FakeAccountClient(_snapshot(964.0), _snapshot(957.0), _snapshot(940.0))
        store, alarm, poller = await _setup(client)

        await poller.poll_once()
        assert poller.last_result.level is RiskLevel.WARNING
        assert alarm.alert_type is AlertType.WARNING
        await poller.poll_once()
        assert alarm.alert_type is AlertType.DANGER
        await poller.poll_once()
        assert alarm.alert_type is AlertType.EMERGENCY

        alerts = await store.list_alerts('u1')
        assert sorted(a.alert_type.value for a in alerts) == ['danger', 'emergency', 'warning']
        reasons = [t.reason for t in alarm.transitions]
        assert 'interrupted_by_danger' in reasons
        assert 'interrupted_by_emergency' in reasons

        # Holding at emergency adds nothing
        await poller.poll_once()
        assert len(await store.list_alerts('u1')) == 3
        await poller.stop()

    asyncio.run(_run())


def test_rearmed_level_sounds_again_but_records_once_per_day():
    async def _run():
        client = FakeAccountClient(_snapshot(964.0), _snapshot(1000.0), _snapshot(964.0))
        store, alarm, poller = await _setup(client)
        await poller.poll_once()
        assert alarm.alert_type is AlertType.WARNING
        await poller.poll_once()
        assert alarm.state is AlarmState.IDLE
        await poller.poll_once()
        assert alarm.alert_type is AlertType.WARNING
        assert alarm.is_active
        assert len(await store.list_alerts('u1')) == 1
        await poller.stop()

    asyncio.run(_run())


def test_recovery_clears_alarm():
    async def _run():
        client = FakeAccountClient(_snapshot(940.0), _snapshot(955.0), _snapshot(961.0))
        _, alarm, poller = await _setup(client)
        await poller.poll_once()
        assert alarm.is_active
        await poller.poll_once()
        assert alarm.is_active
        await poller.poll_once()
        assert alarm.state is AlarmState.IDLE
        assert alarm.transitions[-1].reason == 'condition_cleared'

    asyncio.run(_run())


def test_stale_result_is_discarded():
    async def _run():
        slow = Gate(1000.0)
        client = FakeAccountClient(slow, _snapshot(990.0))
        _, _, poller = await _setup(client)

        first = poller._spawn_poll()
        second = poller._spawn_poll()
        assert await second is True
        assert poller.last_snapshot.total_balance == 990.0

        slow.set()
        assert await first is False
        assert poller.last_snapshot.total_balance == 990.0
        assert poller.status()['last_applied_seq'] == 2

    asyncio.run(_run())


def test_snapshot_event_published():
    async def _run():
        bus = NotificationBus()
        positions = [Position('BTCUSDT', 0.1, margin_ratio=85.0), Position('ETHUSDT', 1.0, margin_ratio=40.0)]
        _, _, poller = await _setup(FakeAccountClient(_snapshot(980.0, positions)), bus=bus)
        with bus.subscribe('u1') as sub:
            await poller.poll_once()
            event = await sub.get(timeout=1)
        assert event.type == 'snapshot'
        assert event.payload['seq'] == 1
        assert event.payload['account']['balance']['total'] == 980.0
        assert event.payload['evaluation']['loss_percent'] == 2.0
        assert [p['symbol'] for p in event.payload['critical_positions']] == ['BTCUSDT']

    asyncio.run(_run())


def test_auth_error_pauses_until_resume():
    async def _run():
        bus = NotificationBus()
        client = FakeAccountClient(AuthError(401, -2015, "Invalid API-key", ""), _snapshot(1000.0))
        _, _, poller = await _setup(client, bus=bus)
        with bus.subscribe('u1') as sub:
            assert not await poller.poll_once()
            event = await sub.get(timeout=1)
        assert poller.state is PollerState.PAUSED
        assert poller.pause_reason == 'AuthError'
        assert event.type == 'reconfigure_credentials'
        assert client.closed

        await poller.resume()
        assert poller.state is PollerState.RUNNING
        assert await poller.poll_once()
        assert poller.factory_calls == ['u1', 'u1']
        await poller.stop()

    asyncio.run(_run())


def test_missing_credentials_pause():
    async def _run():
        _, _, poller = await _setup(CredentialsMissing("No active exchange account for u1"))
        assert not await poller.poll_once()
        assert poller.state is PollerState.PAUSED
        assert poller.pause_reason == 'CredentialsMissing'

    asyncio.run(_run())


def test_rate_limit_backs_off():
    async def _run():
        client = FakeAccountClient(RateLimitError(429, -1003, "Too many requests", "", retry_after=30))
        _, _, poller = await _setup(client)
        assert not await poller.poll_once()
        remaining = poller.backoff_until - time.monotonic()
        assert 25 < remaining <= 30
        assert poller.status()['rate_limited']
        assert poller.state is not PollerState.PAUSED

    asyncio.run(_run())


def test_rate_limit_without_header_uses_configured_backoff():
    async def _run():
        client = FakeAccountClient(RateLimitError(418, None, None, ""))
        _, _, poller = await _setup(client)
        await poller.poll_once()
        remaining = poller.backoff_until - time.monotonic()
        assert 5 < remaining <= 7

    asyncio.run(_run())


def test_transient_error_is_logged_and_loop_continues():
    async def _run():
        client = FakeAccountClient(TransientError("Timeout calling /fapi/v2/balance"), _snapshot(1000.0))
        _, _, poller = await _setup(client)
        poller.start()
        for _ in range(100):
            if poller.last_snapshot is not None:
                break
            await asyncio.sleep(0.01)
        assert poller.last_snapshot is not None
        assert poller.last_error is None
        await poller.stop()
        assert poller.state is PollerState.STOPPED

    asyncio.run(_run())


def test_stop_cancels_inflight_fetches():
    async def _run():
        never = Gate(1000.0)
        _, alarm, poller = await _setup(FakeAccountClient(never))
        await alarm.trigger(AlertType.CRITICAL_LOSS)
        poller.start()
        await asyncio.sleep(0.05)
        assert poller.status()['inflight'] >= 1
        await asyncio.wait_for(poller.stop(), 1.0)
        assert poller.status()['inflight'] == 0
        assert alarm.state is AlarmState.IDLE

    asyncio.run(_run())


def test_emergency_runs_kill_switch_when_enabled():
    async def _run():
        bus = NotificationBus()
        client = FakeAccountClient(
            _snapshot(940.0),
            positions=[Position('BTCUSDT', 0.5), Position('ETHUSDT', -2.0)],
        )
        store, _, poller = await _setup(client, bus=bus, kill_switch_enabled=True)
        await poller.poll_once()
        await asyncio.wait_for(poller._kill_task, 1.0)
        assert client.orders == [('BTCUSDT', 'SELL', 0.5), ('ETHUSDT', 'BUY', 2.0)]

        # Still in emergency: no second run
        await poller.poll_once()
        assert len(client.orders) == 2
        notifications = await store.list_notifications('u1')
        assert [n.type for n in notifications] == ['position_closure']
        await poller.stop()

    asyncio.run(_run())


def test_kill_switch_uses_its_own_client():
    async def _run():
        poll_client = FakeAccountClient(_snapshot(940.0))
        kill_client = FakeAccountClient(_snapshot(940.0), positions=[Position('BTCUSDT', 0.5)])
        clients = [poll_client, kill_client]
        _, _, poller = await _setup(poll_client, kill_switch_enabled=True)

        async def client_factory(user_id):
            return clients.pop(0)

        poller.client_factory = client_factory
        await poller.poll_once()
        await asyncio.wait_for(poller._kill_task, 1.0)
        assert kill_client.orders == [('BTCUSDT', 'SELL', 0.5)]
        assert kill_client.closed
        assert poll_client.orders == []
        assert not poll_client.closed

        # The poller keeps its own client after the flatten
        await poller.poll_once()
        assert poll_client.calls == 2
        await poller.stop()
        assert poll_client.closed

    asyncio.run(_run())


def test_reentered_keys_are_used_after_resume():
    async def _run():
        store = MemoryStore()
        await store.save_risk_profile(RiskProfile(user_id='u1', initial_balance=1000.0))
        vault = CredentialVault(store, CredentialCipher('poller-key'))
        await vault.save('u1', 'main', 'revoked-key', 'old-secret')

        async def client_factory(user_id):
            credentials = await vault.credentials_for(user_id)
            if credentials.api_key == 'revoked-key':
                return FakeAccountClient(AuthError(401, -2015, "Invalid API-key", ""))
            return FakeAccountClient(_snapshot(990.0))

        alarm = AlarmPlayer('u1', sample_rate=8000, cycle_s=0.05, chunk_s=0.01)
        poller = LivePoller('u1', store, alarm, client_factory, evaluator=ThresholdEvaluator(hysteresis_pct=1.0))
        assert not await poller.poll_once()
        assert poller.state is PollerState.PAUSED

        await vault.save('u1', 'main', 'fresh-key', 'new-secret')
        await poller.resume()
        assert await poller.poll_once()
        assert poller.last_snapshot.total_balance == 990.0
        await poller.stop()

    asyncio.run(_run())


def test_pnl_rules_checked_on_each_applied_snapshot():
    async def _run():
        snapshot = AccountSnapshot(total_balance=990.0, available_balance=990.0, realized_pnl_today=-60.0)
        store, _, poller = await _setup(FakeAccountClient(snapshot))
        await store.save_pnl_alert_config(PnLAlertConfig('u1', 'loss', 'daily_usdt', 50.0))
        poller.pnl_checker = PnLAlertChecker(store)

        await poller.poll_once()
        await poller.poll_once()
        notifications = await store.list_notifications('u1')
        assert [n.type for n in notifications] == ['pnl_loss_alert']
        assert notifications[0].title == 'Loss alert - daily_usdt'
        await poller.stop()

    asyncio.run(_run())


def test_kill_switch_not_run_when_disabled():
    async def _run():
        client = FakeAccountClient(_snapshot(900.0), positions=[Position('BTCUSDT', 1.0)])
        _, _, poller = await _setup(client)
        await poller.poll_once()
        assert poller._kill_task is None
        assert client.orders == []
        await poller.stop()

    asyncio.run(_run())


def test_listener_triggers_on_server_notifications():
    async def _run():
        bus = NotificationBus()
        store = MemoryStore(bus)
        alarm = AlarmPlayer('u1', sample_rate=8000, cycle_s=0.05, chunk_s=0.01)
        listener = NotificationListener('u1', bus, alarm, store)
        assert not await listener.handle('notification', {'type': 'info'})
        assert not await listener.handle('notification', {'type': 'warning'})
        assert not await listener.handle('alert', {'type': 'gain'})
        assert alarm.state is AlarmState.IDLE

        listener.start()
        await asyncio.sleep(0)
        await store.insert_notification('u1', 'Gain!', 'target reached', type='gain')
        assert await alarm.wait_until_playing(1.0)
        assert alarm.alert_type is AlertType.GAIN
        await store.insert_notification('u1', 'Loss alert - daily_usdt', 'Daily loss', type='pnl_loss_alert')
        for _ in range(100):
            if alarm.alert_type is AlertType.CRITICAL_LOSS:
                break
            await asyncio.sleep(0.01)
        assert alarm.alert_type is AlertType.CRITICAL_LOSS
        await listener.stop()
        await alarm.close()

    asyncio.run(_run())
