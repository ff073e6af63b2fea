"""Tests for the reference spot price feed."""

import httpx
import pytest

from data.errors import UpstreamFetchError
from services.price_feed import SpotPriceFeed, parse_binance_price, parse_coinbase_price


def make_feed(handler, **kwargs) -> SpotPriceFeed:
    return SpotPriceFeed(transport=httpx.MockTransport(handler), **kwargs)


class TestParsers:
    """Payload parsing for each exchange."""

    def test_binance_string_price(self):
        assert parse_binance_price({'symbol': 'BTCUSDT', 'price': '95000.12'}) == 95000.12

    def test_binance_numeric_price(self):
        assert parse_binance_price({'price': 95000}) == 95000.0

    def test_binance_missing_price(self):
        with pytest.raises(UpstreamFetchError):
            parse_binance_price({'code': 0, 'msg': 'Service unavailable from a restricted location'})

    def test_coinbase_amount(self):
        assert parse_coinbase_price({'data': {'base': 'BTC', 'currency': 'USD', 'amount': '94999.5'}}) == 94999.5

    def test_coinbase_missing_amount(self):
        with pytest.raises(UpstreamFetchError):
            parse_coinbase_price({'errors': [{'id': 'not_found'}]})

    @pytest.mark.parametrize("bad", ["abc", "0", "-5", "nan", None])
    def test_rejects_unusable_prices(self, bad):
        with pytest.raises(UpstreamFetchError):
            parse_binance_price({'price': bad})


class TestSpotPriceFeed:
    """Fetching with fallback."""

    @pytest.mark.asyncio
    async def test_binance_first(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            return httpx.Response(200, json={'symbol': 'BTCUSDT', 'price': '95000.00'})

        quote = await make_feed(handler).get_spot()

        assert quote.price == 95000.0
        assert quote.source == 'binance'
        assert seen == ['api.binance.com']

    @pytest.mark.asyncio
    async def test_falls_back_to_coinbase(self):
        def handler(request):
            if request.url.host == 'api.binance.com':
                return httpx.Response(451, json={'msg': 'restricted location'})
            assert request.url.path == '/v2/prices/BTC-USD/spot'
            return httpx.Response(200, json={'data': {'amount': '94900.50'}})

        quote = await make_feed(handler).get_spot()

        assert quote.source == 'coinbase'
        assert quote.price == 94900.5

    @pytest.mark.asyncio
    async def test_all_sources_failing_raises(self):
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        with pytest.raises(UpstreamFetchError) as exc_info:
            await make_feed(handler).get_spot()
        assert exc_info.value.source == 'spot'
        assert 'binance' in exc_info.value.detail
        assert 'coinbase' in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_timeout_is_a_source_failure(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(UpstreamFetchError, match="timed out"):
            await make_feed(handler, sources=("binance",)).get_spot()

    @pytest.mark.asyncio
    async def test_garbage_body_falls_through(self):
        def handler(request):
            if request.url.host == 'api.binance.com':
                return httpx.Response(200, text="<html>maintenance</html>")
            return httpx.Response(200, json={'data': {'amount': '95001'}})

        quote = await make_feed(handler).get_spot()
        assert quote.source == 'coinbase'

    def test_unknown_source_rejected(self):
        with pytest.raises(ValueError):
            SpotPriceFeed(sources=("kraken",))
