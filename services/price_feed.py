"""Reference spot price feed.

Polls public ticker endpoints. Binance is asked first and Coinbase is the
fallback; the first source that answers with a usable price wins.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence
import httpx
from loguru import logger

from data.errors import UpstreamFetchError
from data.models import utcnow


@dataclass
class SpotQuote:
    """A spot price from one source."""
    price: float
    source: str
    symbol: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            'price': self.price,
            'source': self.source,
            'symbol': self.symbol,
            'timestamp': self.timestamp.isoformat(),
        }


def _as_price(value: Any, source: str) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError) as e:
        raise UpstreamFetchError(source, f"price {value!r} is not a number") from e
    if not math.isfinite(price) or price <= 0:
        raise UpstreamFetchError(source, f"price {price} out of range")
    return price


def parse_binance_price(payload: Any) -> float:
    """Binance ticker: {"symbol": "BTCUSDT", "price": "95000.12"}."""
    if not isinstance(payload, dict) or 'price' not in payload:
        raise UpstreamFetchError("binance", "response has no price field")
    return _as_price(payload['price'], "binance")


def parse_coinbase_price(payload: Any) -> float:
    """Coinbase spot: {"data": {"base": "BTC", "currency": "USD", "amount": "95000.12"}}."""
    data = payload.get('data') if isinstance(payload, dict) else None
    if not isinstance(data, dict) or 'amount' not in data:
        raise UpstreamFetchError("coinbase", "response has no data.amount field")
    return _as_price(data['amount'], "coinbase")


class SpotPriceFeed:
    """Fetches the reference spot price with source fallback."""

    BINANCE_URL = "https://api.binance.com/api/v3/ticker/price"
    COINBASE_URL = "https://api.coinbase.com/v2/prices/{product}/spot"

    def __init__(self,
                 symbol: str = "BTCUSDT",
                 coinbase_product: str = "BTC-USD",
                 sources: Sequence[str] = ("binance", "coinbase"),
                 timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize the feed.

        Args:
            symbol: Binance symbol
            coinbase_product: Coinbase product id
            sources: Sources to try, in order
            timeout: Per-request timeout in seconds
            transport: httpx transport override, used by tests
        """
        unknown = set(sources) - {"binance", "coinbase"}
        if unknown or not sources:
            raise ValueError(f"Unknown spot sources: {sorted(unknown) or 'none given'}")
        self.symbol = symbol
        self.coinbase_product = coinbase_product
        self.sources = tuple(sources)
        self.timeout = timeout
        self._transport = transport

    async def _get_json(self, client: httpx.AsyncClient, source: str, url: str,
                        params: Optional[dict] = None) -> Any:
        try:
            response = await client.get(url, params=params, headers={'Accept': 'application/json'})
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamFetchError(source, "ticker request rejected",
                                     status_code=e.response.status_code) from e
        except httpx.TimeoutException as e:
            raise UpstreamFetchError(source, f"timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(source, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise UpstreamFetchError(source, "non-JSON response") from e

    async def fetch_binance(self, client: httpx.AsyncClient) -> SpotQuote:
        payload = await self._get_json(client, "binance", self.BINANCE_URL, {'symbol': self.symbol})
        return SpotQuote(price=parse_binance_price(payload), source="binance", symbol=self.symbol)

    async def fetch_coinbase(self, client: httpx.AsyncClient) -> SpotQuote:
        url = self.COINBASE_URL.format(product=self.coinbase_product)
        payload = await self._get_json(client, "coinbase", url)
        return SpotQuote(price=parse_coinbase_price(payload), source="coinbase", symbol=self.coinbase_product)

    async def get_spot(self) -> SpotQuote:
        """Current reference price from the first source that answers.

        Raises:
            UpstreamFetchError: every configured source failed
        """
        failures: list[str] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for source in self.sources:
                fetch = self.fetch_binance if source == "binance" else self.fetch_coinbase
                try:
                    quote = await fetch(client)
                except UpstreamFetchError as e:
                    logger.warning(f"Spot price from {source} failed: {e}")
                    failures.append(str(e))
                    continue
                logger.debug(f"Spot {quote.symbol} = ${quote.price:,.2f} ({source})")
                return quote

        raise UpstreamFetchError("spot", "all sources failed: " + "; ".join(failures))
