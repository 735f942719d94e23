import asyncio
import sys

sys.path.insert(0, '.')

from ingest.account_client import OrderAck
from ingest.binance_rest import BinanceAPIError
from risk.kill_switch import KillSwitchExecutor
from risk.models import Position
from store.memory import MemoryStore


class FakeAccountClient:
    def __init__(self, positions, failing=()):
        self.positions = positions
        self.failing = set(failing)
        self.orders = []

    async def fetch_open_positions(self):
        return list(self.positions)

    async def place_market_order(self, symbol, side, quantity, reduce_only=True):
        self.orders.append((symbol, side, quantity, reduce_only))
        if symbol in self.failing:
            raise BinanceAPIError(400, -2019, "Margin is insufficient.", "")
        return OrderAck(symbol=symbol, side=side, quantity=quantity, status="FILLED", exchange_order_id=len(self.orders))

    async def close(self):
        pass


def test_flatten_closes_each_position_opposite_side():
    async def _run():
        client = FakeAccountClient([Position('BTCUSDT', 0.5), Position('ETHUSDT', -2.0)])
        report = await KillSwitchExecutor().flatten_all_positions(client)
        assert client.orders == [
            ('BTCUSDT', 'SELL', 0.5, True),
            ('ETHUSDT', 'BUY', 2.0, True),
        ]
        assert report.total_positions == 2
        assert [c.symbol for c in report.closed] == ['BTCUSDT', 'ETHUSDT']
        assert report.ok

    asyncio.run(_run())


def test_one_failure_does_not_block_the_rest():
    async def _run():
        client = FakeAccountClient(
            [Position('BTCUSDT', 0.5), Position('ETHUSDT', -2.0)],
            failing={'BTCUSDT'},
        )
        report = await KillSwitchExecutor().flatten_all_positions(client)
        assert len(client.orders) == 2
        assert [c.symbol for c in report.closed] == ['ETHUSDT']
        assert [e.symbol for e in report.errors] == ['BTCUSDT']
        assert 'insufficient' in report.errors[0].error
        assert not report.ok

    asyncio.run(_run())


def test_failed_close_is_not_retried():
    async def _run():
        client = FakeAccountClient([Position('BTCUSDT', 1.0)], failing={'BTCUSDT'})
        await KillSwitchExecutor().flatten_all_positions(client)
        assert len(client.orders) == 1

    asyncio.run(_run())


def test_notification_recorded_for_user():
    async def _run():
        store = MemoryStore()
        client = FakeAccountClient([Position('BTCUSDT', 0.5), Position('ETHUSDT', -2.0)], failing={'BTCUSDT'})
        await KillSwitchExecutor(store).flatten_all_positions(client, user_id='u1', reason='manual')
        notifications = await store.list_notifications('u1')
        assert len(notifications) == 1
        assert notifications[0].type == 'position_closure'
        assert '1 of 2' in notifications[0].description
        assert 'BTCUSDT' in notifications[0].description

    asyncio.run(_run())


def test_no_positions_still_reports():
    async def _run():
        store = MemoryStore()
        report = await KillSwitchExecutor(store).flatten_all_positions(FakeAccountClient([]), user_id='u1')
        assert report.total_positions == 0
        assert report.to_dict() == {'total_positions': 0, 'closed': [], 'errors': []}
        notifications = await store.list_notifications('u1')
        assert notifications[0].description == 'No open positions to close'

    asyncio.run(_run())
