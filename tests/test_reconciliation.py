import asyncio
import sys
from datetime import date, timedelta

sys.path.insert(0, '.')

from ingest.binance_rest import AuthError, TransientError
from monitoring.event_bus import NotificationBus
from orchestration.reconciliation import DailyPnLReconciler, day_bounds_ms
from risk.models import BinanceAccount, DailyPnL
from security.encryption import DecryptionError
from store.memory import MemoryStore


TODAY = date(2024, 3, 10)


class FakeIncomeClient:
    def __init__(self, balance=1000.0, pnl_by_day=None, fail_days=(), auth_fail_day=None):
        self.balance = balance
        self.pnl_by_day = pnl_by_day or {}
        self.fail_starts = {day_bounds_ms(d)[0] for d in fail_days}
        self.auth_fail_start = day_bounds_ms(auth_fail_day)[0] if auth_fail_day else None
        self.requests = []
        self.closed = False

    async def fetch_wallet_balance(self, market_type):
        return self.balance

    async def fetch_realized_pnl(self, start_ms, end_ms, market_type):
        self.requests.append((start_ms, market_type))
        if start_ms in self.fail_starts:
            raise TransientError("Timeout calling /fapi/v1/income")
        if start_ms == self.auth_fail_start:
            raise AuthError(401, -2015, "Invalid API-key", "")
        for day, pnl in self.pnl_by_day.items():
            if day_bounds_ms(day)[0] == start_ms:
                return pnl
        return 0.0

    async def close(self):
        self.closed = True


async def _seed(store, user_id='u1'):
    return await store.save_account(BinanceAccount(user_id, 'main', 'enc-key', 'enc-secret'))


def _reconciler(store, client, **kwargs):
    async def factory(account):
        if isinstance(client, Exception):
            raise client
        return client

    kwargs.setdefault('market_types', ['USDT'])
    return DailyPnLReconciler(store, client_factory=factory, pause_s=0, **kwargs)


def test_day_bounds_cover_the_utc_day():
    start, end = day_bounds_ms(date(2024, 1, 1))
    assert start == 1704067200000
    assert end == start + 86400000 - 1


def test_missing_days_window_excludes_today_and_existing():
    async def _run():
        store = MemoryStore()
        await store.upsert_daily_pnl(DailyPnL('u1', TODAY - timedelta(days=2), 'USDT', 5.0, 0.5))
        reconciler = _reconciler(store, FakeIncomeClient())
        days = await reconciler.missing_days('u1', 'USDT', 3, TODAY)
        assert days == [TODAY - timedelta(days=3), TODAY - timedelta(days=1)]

    asyncio.run(_run())


def test_partial_success_reports_failed_days():
    async def _run():
        store = MemoryStore()
        account = await _seed(store)
        bad_day = TODAY - timedelta(days=2)
        client = FakeIncomeClient(
            balance=2000.0,
            pnl_by_day={TODAY - timedelta(days=1): 50.0},
            fail_days=[bad_day],
        )
        progress = await _reconciler(store, client).sync_account(account, 3, TODAY)

        assert progress.total == 3
        assert progress.completed == 2
        assert progress.failed == 1
        assert progress.done
        assert len(progress.errors) == 1
        assert bad_day.isoformat() in progress.errors[0]
        assert client.closed

        stored = await store.existing_pnl_days('u1', 'USDT', TODAY - timedelta(days=3), TODAY)
        assert stored == {TODAY - timedelta(days=3), TODAY - timedelta(days=1)}
        row = store._daily_pnl[('u1', TODAY - timedelta(days=1), 'USDT')]
        assert row.pnl_usd == 50.0
        assert row.pnl_percentage == 2.5

    asyncio.run(_run())


def test_rerun_only_fetches_missing_days():
    async def _run():
        store = MemoryStore()
        account = await _seed(store)
        client = FakeIncomeClient(fail_days=[TODAY - timedelta(days=2)])
        reconciler = _reconciler(store, client)
        await reconciler.sync_account(account, 3, TODAY)

        retry_client = FakeIncomeClient()
        retry = await _reconciler(store, retry_client).sync_account(account, 3, TODAY)
        assert retry.total == 1
        assert retry.completed == 1
        assert len(retry_client.requests) == 1

    asyncio.run(_run())


def test_both_market_types_are_synced():
    async def _run():
        store = MemoryStore()
        account = await _seed(store)
        client = FakeIncomeClient()
        progress = await _reconciler(store, client, market_types=['USDT', 'COIN']).sync_account(account, 2, TODAY)
        assert progress.total == 4
        assert {m for _, m in client.requests} == {'USDT', 'COIN'}

    asyncio.run(_run())


def test_auth_error_aborts_remaining_days():
    async def _run():
        store = MemoryStore()
        account = await _seed(store)
        client = FakeIncomeClient(auth_fail_day=TODAY - timedelta(days=4))
        progress = await _reconciler(store, client).sync_account(account, 5, TODAY)
        assert progress.total == 5
        assert progress.completed == 1
        assert progress.failed == 4
        assert len(client.requests) == 2

    asyncio.run(_run())


def test_undecryptable_credentials_fail_every_day():
    async def _run():
        store = MemoryStore()
        account = await _seed(store)
        reconciler = _reconciler(store, DecryptionError("Authentication tag mismatch"))
        progress = await reconciler.sync_account(account, 3, TODAY)
        assert progress.total == 3
        assert progress.failed == 3
        assert progress.completed == 0

    asyncio.run(_run())


def test_window_is_clamped():
    store = MemoryStore()
    reconciler = _reconciler(store, FakeIncomeClient(), window_days=1000)
    assert reconciler.window_days == 365
    assert reconciler._clamp(0) == 1


def test_run_merges_accounts_and_publishes_progress():
    async def _run():
        bus = NotificationBus()
        store = MemoryStore()
        await _seed(store, 'u1')
        await _seed(store, 'u2')
        reconciler = _reconciler(store, FakeIncomeClient(), bus=bus, window_days=2)
        with bus.subscribe() as sub:
            progress = await reconciler.run()
            event = await sub.get(timeout=1)
        assert progress.total == 4
        assert progress.completed == 4
        assert event.type == 'pnl_sync_progress'

    asyncio.run(_run())


def test_sync_user_without_account():
    async def _run():
        progress = await _reconciler(MemoryStore(), FakeIncomeClient()).sync_user('ghost')
        assert progress.total == 0
        assert 'no active exchange account' in progress.errors[0]

    asyncio.run(_run())
