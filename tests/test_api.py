import asyncio
import sys

from fastapi.testclient import TestClient

sys.path.insert(0, '.')

from api.fastapi_server import app
from ingest.account_client import OrderAck
from main import MonitoringSystem
from monitoring.event_bus import NotificationBus
from risk.models import AccountSnapshot, AlertType, Position, RiskLevel, RiskProfile
from security.credentials import CredentialsMissing
from store.memory import MemoryStore


class FakeAccountClient:
    def __init__(self):
        self.orders = []

    async def fetch_account_snapshot(self):
        return AccountSnapshot(
            total_balance=980.0,
            available_balance=900.0,
            positions=[Position('BTCUSDT', 0.25, margin_ratio=82.5)],
        )

    async def fetch_open_positions(self):
        return [Position('BTCUSDT', 0.25)]

    async def place_market_order(self, symbol, side, quantity, reduce_only=True):
        self.orders.append((symbol, side, quantity, reduce_only))
        return OrderAck(symbol=symbol, side=side, quantity=quantity, status='FILLED', exchange_order_id=7)

    async def close(self):
        pass


def _install(monkeypatch):
    monkeypatch.setenv('ENCRYPTION_KEY', 'api-test-key')
    bus = NotificationBus()
    client = FakeAccountClient()

    async def client_factory(user_id):
        if user_id == 'ghost':
            raise CredentialsMissing(f"No active exchange account for {user_id}")
        return client

    system = MonitoringSystem(store=MemoryStore(bus), bus=bus, client_factory=client_factory)
    app.state.monitoring_system = system
    return system, client


def test_health_and_status(monkeypatch):
    _install(monkeypatch)
    with TestClient(app) as http:
        health = http.get('/health').json()
        assert health['status'] == 'healthy'
        assert health['system_running'] is True
        status = http.get('/api/status').json()
        assert set(status['jobs']) == {'daily_pnl_reconciliation', 'renewal_sweep', 'pnl_alert_check'}


def test_settings_validation(monkeypatch):
    _install(monkeypatch)
    with TestClient(app) as http:
        bad = http.put('/api/users/u1/settings', json={'loss_threshold_percent': 99})
        assert bad.status_code == 400
        assert bad.json()['field'] == 'loss_threshold_percent'

        ok = http.put('/api/users/u1/settings', json={'initial_balance': 1000, 'siren_type': 'fire'})
        assert ok.status_code == 200
        assert http.get('/api/users/u1/settings').json()['siren_type'] == 'fire'


def test_alarm_test_ack_and_stop(monkeypatch):
    _install(monkeypatch)
    with TestClient(app) as http:
        assert http.post('/api/users/u1/alarm/test', json={'type': 'foghorn'}).status_code == 400

        result = http.post('/api/users/u1/alarm/test', json={'type': 'gain'}).json()
        assert result['triggered'] is True
        assert result['alert']['is_test'] is True
        assert http.get('/api/users/u1/alarm').json()['state'] in ('triggered', 'playing')
        notifications = http.get('/api/users/u1/notifications').json()['notifications']
        assert [n['type'] for n in notifications] == ['gain']

        alert_id = result['alert']['id']
        assert http.post(f'/api/alerts/{alert_id}/ack').json()['acknowledged'] is True
        assert http.post('/api/alerts/9999/ack').status_code == 404

        stopped = http.post('/api/users/u1/alarm/stop').json()
        assert stopped['stopped'] == 'gain'
        assert http.get('/api/users/u1/alarm').json()['state'] == 'idle'

        assert http.delete('/api/users/u1/alerts/test').json() == {'deleted': 1}
        assert http.get('/api/users/u1/alerts').json()['count'] == 0


def test_login_rate_limit(monkeypatch):
    _install(monkeypatch)
    body = {'identifier': 'trader@example.com', 'attempt_type': 'login'}
    with TestClient(app) as http:
        for _ in range(5):
            assert http.post('/api/rate_limit/check', json=body).status_code == 200
        denied = http.post('/api/rate_limit/check', json=body)
        assert denied.status_code == 429
        assert denied.json()['retry_after'] == 900
        assert http.post('/api/rate_limit/check', json={'identifier': 'x'}).status_code == 400


def test_kill_switch_flattens_with_reduce_only(monkeypatch):
    _, client = _install(monkeypatch)
    with TestClient(app) as http:
        report = http.post('/api/users/u1/kill_switch').json()
        assert report['total_positions'] == 1
        assert report['errors'] == []
        assert client.orders == [('BTCUSDT', 'SELL', 0.25, True)]


def test_snapshot_and_credential_errors(monkeypatch):
    _install(monkeypatch)
    with TestClient(app) as http:
        snapshot = http.get('/api/users/u1/snapshot').json()
        assert snapshot['balance']['total'] == 980.0
        assert [p['symbol'] for p in snapshot['critical_positions']] == ['BTCUSDT']

        missing = http.get('/api/users/ghost/snapshot')
        assert missing.status_code == 409
        assert missing.json()['reconfigure'] is True


def test_account_save_encrypts_keys(monkeypatch):
    system, _ = _install(monkeypatch)
    with TestClient(app) as http:
        assert http.put('/api/users/u1/account', json={'api_key': ' '}).status_code == 400
        saved = http.put('/api/users/u1/account', json={'api_key': 'plain-key', 'api_secret': 'plain-secret'})
        assert saved.status_code == 200
        assert saved.json()['resumed'] is False
        assert 'plain-key' not in saved.text
        assert http.post('/api/users/u1/monitor/resume').status_code == 404


def test_jobs_and_pnl_sync(monkeypatch):
    _install(monkeypatch)
    with TestClient(app) as http:
        job = http.post('/api/jobs/renewal_sweep/run').json()
        assert job['runs'] >= 1
        assert job['failures'] == 0
        assert http.post('/api/jobs/unknown/run').status_code == 404
        assert http.post('/api/users/u1/pnl/sync', json={'window_days': 'ten'}).status_code == 400
        progress = http.post('/api/users/u1/pnl/sync', json={'window_days': 3}).json()
        assert progress['total'] == 0


def test_test_alarm_leaves_real_breach_recorded(monkeypatch):
    async def _run():
        system, _ = _install(monkeypatch)
        await system.store.save_risk_profile(
            RiskProfile(user_id='u1', initial_balance=1000.0, loss_threshold_percent=2.05)
        )
        result = await system.test_alarm('u1', AlertType.CRITICAL_LOSS)
        assert result['created'] is True
        await system.stop_alarm('u1')

        session = await system.start_monitoring('u1')
        await session.poller.poll_once()
        assert session.poller.last_result.level is RiskLevel.CRITICAL
        assert session.alarm.alert_type is AlertType.CRITICAL_LOSS

        assert await system.store.clear_test_alerts('u1') == 1
        alerts = await system.alert_history('u1')
        assert [(a.alert_type, a.is_test) for a in alerts] == [(AlertType.CRITICAL_LOSS, False)]
        await system.stop()

    asyncio.run(_run())


def test_pnl_alert_rules(monkeypatch):
    _install(monkeypatch)
    with TestClient(app) as http:
        http.put('/api/users/u1/settings', json={'initial_balance': 1000})
        bad = http.post('/api/users/u1/pnl_alerts', json={'alert_type': 'loss', 'trigger_type': 'weekly', 'threshold': 5})
        assert bad.status_code == 400
        assert bad.json()['field'] == 'trigger_type'

        rule = http.post(
            '/api/users/u1/pnl_alerts',
            json={'alert_type': 'loss', 'trigger_type': 'total_usdt', 'threshold': 15},
        ).json()
        assert rule['id'] is not None
        assert http.get('/api/users/u1/pnl_alerts').json()['count'] == 1
        foreign = http.post(
            '/api/users/u2/pnl_alerts',
            json={'id': rule['id'], 'alert_type': 'gain', 'trigger_type': 'total_usdt', 'threshold': 1},
        )
        assert foreign.status_code == 404

        first = http.post('/api/users/u1/pnl_alerts/check').json()
        assert first['count'] == 1
        assert first['triggered'][0]['value'] == -20.0
        assert first['triggered'][0]['notified'] is True
        second = http.post('/api/users/u1/pnl_alerts/check').json()
        assert second['triggered'][0]['notified'] is False

        notifications = http.get('/api/users/u1/notifications').json()['notifications']
        assert [n['type'] for n in notifications] == ['pnl_loss_alert']
