"""Tests for the HTTP routes."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import test_utils

from data.errors import CredentialError, UpstreamFetchError
from data.state_store import MonitorStateStore
from logic.gap_monitor import ArbitrageMonitor
from services.gap_server import GapServer
from services.kalshi_client import ClockCalibrator
from services.price_feed import SpotQuote


MARKETS = [
    {'ticker': 'KXBTCD-T94699.99', 'yes_sub_title': '$94,700 or above', 'yes_bid': 48, 'yes_ask': 52, 'volume': 5000},
    {'ticker': 'KXBTCD-T95199.99', 'yes_sub_title': '$95,200 or above', 'yes_bid': 20, 'yes_ask': 24, 'volume': 5000},
]


@pytest.fixture
def kalshi():
    client = MagicMock()
    client.calibrator = ClockCalibrator()
    client.has_credential = True
    client.get_events = AsyncMock(return_value={'events': [{'event_ticker': 'KXBTCD-25JAN0117'}]})
    client.get_markets = AsyncMock(return_value={'markets': MARKETS})
    client.get_balance = AsyncMock(return_value={'balance': 10000})
    client.get_positions = AsyncMock(return_value={'market_positions': []})
    client.get_orders = AsyncMock(return_value={'orders': []})
    client.place_order = AsyncMock(return_value={'order': {'order_id': 'ord-1'}})
    client.cancel_order = AsyncMock(return_value={'order': {'status': 'canceled'}})
    return client


@pytest.fixture
def price_feed():
    feed = MagicMock()
    feed.get_spot = AsyncMock(return_value=SpotQuote(price=95000.0, source='binance', symbol='BTCUSDT'))
    return feed


@pytest.fixture
def gap_server(kalshi, price_feed, tmp_path):
    store = MonitorStateStore(str(tmp_path / "monitor.json"))
    monitor = ArbitrageMonitor(kalshi, price_feed, store)
    return GapServer(monitor)


async def post(client, path, payload):
    return await client.post(path, json=payload)


class TestArbitrageRoutes:
    """/api/arbitrage"""

    @pytest.mark.asyncio
    async def test_gap_status(self, gap_server):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.get('/api/arbitrage')
            assert resp.status == 200
            body = await resp.json()

        assert body['reference']['price'] == 95000.0
        assert body['implied']['price'] == 94700.0
        assert body['implied']['event'] == 'KXBTCD-25JAN0117'
        assert body['gap'] == {'usd': 300.0, 'direction': 'UP', 'is_opportunity': True}
        assert body['history']['total_predictions'] == 0
        assert body['history']['brier_score'] is None

    @pytest.mark.asyncio
    async def test_reference_failure_is_502(self, gap_server, price_feed):
        price_feed.get_spot.side_effect = UpstreamFetchError("spot", "all sources failed")

        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.get('/api/arbitrage')
            assert resp.status == 502
            body = await resp.json()

        assert body['source'] == 'spot'

    @pytest.mark.asyncio
    async def test_log_and_resolve_prediction(self, gap_server):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await post(client, '/api/arbitrage', {
                'action': 'log_prediction',
                'market_ticker': 'KXBTCD-T94699.99',
                'predicted_prob': 80,
                'notes': 'spot above strike',
            })
            assert resp.status == 200
            logged = await resp.json()

            resp = await post(client, '/api/arbitrage', {
                'action': 'resolve_prediction',
                'market_ticker': 'KXBTCD-T94699.99',
                'outcome': 1,
            })
            resolved = await resp.json()

            resp = await post(client, '/api/arbitrage', {
                'action': 'resolve_prediction',
                'market_ticker': 'KXBTCD-T94699.99',
                'outcome': 0,
            })
            again = await resp.json()

        assert logged['success'] is True
        assert logged['state']['predictions'][0]['resolved'] is False
        assert resolved['resolved'] == 1
        assert resolved['state']['predictions'][0]['outcome'] == 1
        assert again['resolved'] == 0
        assert again['state']['predictions'][0]['outcome'] == 1

    @pytest.mark.asyncio
    async def test_record_gap(self, gap_server):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await post(client, '/api/arbitrage', {'action': 'record_gap'})
            body = await resp.json()

        assert resp.status == 200
        assert body['recorded'] is True
        assert len(body['history']['gaps_24h']) == 1
        assert body['history']['gaps_24h'][0]['direction'] == 'UP'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {'action': 'log_prediction', 'market_ticker': 'T1', 'predicted_prob': 150},
        {'action': 'log_prediction', 'market_ticker': 'T1'},
        {'action': 'log_prediction', 'predicted_prob': 50},
        {'action': 'resolve_prediction', 'market_ticker': 'T1', 'outcome': 'yes'},
        {'action': 'resolve_prediction', 'market_ticker': 'T1', 'outcome': 3},
        {'action': 'launch_rocket'},
    ])
    async def test_bad_requests_are_400(self, gap_server, payload):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await post(client, '/api/arbitrage', payload)
            assert resp.status == 400
            body = await resp.json()
        assert body['error'] == 'invalid_request'

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, gap_server):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.post('/api/arbitrage', data='{not json',
                                     headers={'Content-Type': 'application/json'})
            assert resp.status == 400


class TestKalshiProxy:
    """/api/kalshi"""

    @pytest.mark.asyncio
    async def test_balance(self, gap_server, kalshi):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.get('/api/kalshi', params={'endpoint': 'balance'})
            body = await resp.json()

        assert body == {'balance': 10000}
        kalshi.get_balance.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, gap_server):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.get('/api/kalshi', params={'endpoint': 'secrets'})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_missing_credential_is_503(self, gap_server, kalshi):
        kalshi.get_positions.side_effect = CredentialError("No Kalshi credential configured")

        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.get('/api/kalshi', params={'endpoint': 'positions'})
            assert resp.status == 503

    @pytest.mark.asyncio
    async def test_place_order(self, gap_server, kalshi):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await post(client, '/api/kalshi', {
                'action': 'order', 'ticker': 'KXBTCD-T94699.99', 'side': 'yes', 'count': 3, 'price': 45,
            })
            body = await resp.json()

        assert body['success'] is True
        kalshi.place_order.assert_awaited_once_with(
            ticker='KXBTCD-T94699.99', side='yes', count=3, price=45, order_type='limit',
        )

    @pytest.mark.asyncio
    async def test_cancel_requires_order_id(self, gap_server, kalshi):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.delete('/api/kalshi')
            assert resp.status == 400
            resp = await client.delete('/api/kalshi', params={'orderId': 'ord-1'})
            assert resp.status == 200

        kalshi.cancel_order.assert_awaited_once_with('ord-1')

    @pytest.mark.asyncio
    async def test_health(self, gap_server):
        async with test_utils.TestClient(test_utils.TestServer(gap_server.create_app())) as client:
            resp = await client.get('/health')
            body = await resp.json()

        assert body['status'] == 'ok'
        assert body['clock_offset_seconds'] == 0
        assert body['auth'] is True
