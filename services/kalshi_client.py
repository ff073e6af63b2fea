"""Kalshi API client for GapWatch.

Handles request signing, exchange clock calibration, market discovery and
the authenticated portfolio endpoints.

Every authenticated request carries three headers derived from one
millisecond timestamp: the access key, the timestamp itself, and an
RSA-PSS-SHA256 signature over ``timestamp + METHOD + path`` (query string
stripped). Kalshi rejects timestamps outside a small window, so the local
clock is corrected by an offset measured from the exchange's ``Date`` header.
"""

import base64
import math
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional
import httpx
from loguru import logger

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from data.errors import ClockCalibrationFailure, CredentialError, UpstreamFetchError


API_PREFIX = "/trade-api/v2"

# Default process-wide calibration interval
CALIBRATION_INTERVAL_SECONDS = 300


# ============================================================================
# Credentials and signing
# ============================================================================

@dataclass(frozen=True)
class ExchangeCredential:
    """Kalshi API key id plus its RSA private key."""
    api_key_id: str
    private_key: rsa.RSAPrivateKey

    @classmethod
    def from_pem(cls, api_key_id: str, pem: str | bytes) -> "ExchangeCredential":
        """Build a credential from a PEM string.

        Literal ``\\n`` sequences (common when the key lives in an env var)
        are turned into real newlines.
        """
        if not api_key_id:
            raise CredentialError("API key id is empty")
        if not pem:
            raise CredentialError("Private key is empty")

        if isinstance(pem, str):
            pem = pem.replace('\\n', '\n').encode()
        try:
            key = serialization.load_pem_private_key(pem, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise CredentialError(f"Private key could not be loaded: {e}") from e

        if not isinstance(key, rsa.RSAPrivateKey):
            raise CredentialError("Private key is not an RSA key")
        return cls(api_key_id=api_key_id, private_key=key)

    @classmethod
    def from_file(cls, api_key_id: str, path: str) -> "ExchangeCredential":
        """Build a credential from a PEM file on disk."""
        try:
            with open(path, 'rb') as f:
                pem = f.read()
        except OSError as e:
            raise CredentialError(f"Private key file {path} unreadable: {e}") from e
        return cls.from_pem(api_key_id, pem)

    @classmethod
    def from_env(cls) -> Optional["ExchangeCredential"]:
        """Load from KALSHI_API_KEY_ID plus KALSHI_PRIVATE_KEY or KALSHI_PRIVATE_KEY_PATH.

        Returns None when nothing is configured. Raises CredentialError
        when something is configured but unusable.
        """
        api_key_id = os.getenv('KALSHI_API_KEY_ID', '')
        pem = os.getenv('KALSHI_PRIVATE_KEY')
        key_path = os.getenv('KALSHI_PRIVATE_KEY_PATH')

        if not (api_key_id or pem or key_path):
            return None
        if pem:
            return cls.from_pem(api_key_id, pem)
        if key_path:
            return cls.from_file(api_key_id, key_path)
        raise CredentialError("KALSHI_API_KEY_ID set but no private key configured")

    def __repr__(self) -> str:
        return f"ExchangeCredential(api_key_id={self.api_key_id!r})"


def strip_query(path: str) -> str:
    """Drop the query string; Kalshi signs the bare path."""
    return path.split('?', 1)[0]


def signing_message(timestamp_ms: str, method: str, path: str) -> bytes:
    """Canonical message: timestamp + METHOD + path without query string."""
    return f"{timestamp_ms}{method.upper()}{strip_query(path)}".encode()


def sign_message(private_key: rsa.RSAPrivateKey, message: bytes) -> str:
    """RSA-PSS / SHA-256 with digest-length salt, base64 encoded."""
    signature = private_key.sign(
        message,
        padding.PSS(
            mgf=padding.MGF1(hashes.SHA256()),
            salt_length=padding.PSS.DIGEST_LENGTH,
        ),
        hashes.SHA256(),
    )
    return base64.b64encode(signature).decode()


@dataclass(frozen=True)
class SignedRequest:
    """One signed request. Timestamps make each signature single-use."""
    api_key_id: str
    method: str
    path: str
    timestamp_ms: str
    signature: str

    def headers(self) -> dict[str, str]:
        return {
            'KALSHI-ACCESS-KEY': self.api_key_id,
            'KALSHI-ACCESS-SIGNATURE': self.signature,
            'KALSHI-ACCESS-TIMESTAMP': self.timestamp_ms,
            'Content-Type': 'application/json',
        }


def build_signed_request(
    credential: Optional[ExchangeCredential],
    method: str,
    path: str,
    offset_seconds: int = 0,
    now: Optional[float] = None,
) -> SignedRequest:
    """Sign a request for the exchange.

    Args:
        credential: Key id and private key; None raises CredentialError
        method: HTTP method (GET, POST, DELETE)
        path: Full API path, e.g. /trade-api/v2/portfolio/balance; may include a query string
        offset_seconds: Exchange clock minus local clock
        now: Local epoch seconds (defaults to time.time())

    Returns:
        SignedRequest whose timestamp is both signed and sent
    """
    if credential is None:
        raise CredentialError("No Kalshi credential configured - cannot sign request")

    now = time.time() if now is None else now
    timestamp_ms = str(math.floor((now + offset_seconds) * 1000))
    method = method.upper()
    bare_path = strip_query(path)

    signature = sign_message(credential.private_key, signing_message(timestamp_ms, method, bare_path))
    return SignedRequest(
        api_key_id=credential.api_key_id,
        method=method,
        path=bare_path,
        timestamp_ms=timestamp_ms,
        signature=signature,
    )


# ============================================================================
# Clock calibration
# ============================================================================

class ClockCalibrator:
    """Tracks the offset between the exchange clock and the local clock.

    The offset is refreshed at most once per interval after a successful
    calibration. Failures keep the previous offset (0 if there never was
    one) and are retried on the next call. The offset is read and written
    under a lock; a slightly stale value is acceptable.
    """

    STATUS_PATH = f"{API_PREFIX}/exchange/status"

    def __init__(
        self,
        interval_seconds: float = CALIBRATION_INTERVAL_SECONDS,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.interval_seconds = interval_seconds
        self._wall_clock = wall_clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._offset_seconds = 0
        self._last_success: Optional[float] = None

    @property
    def offset_seconds(self) -> int:
        with self._lock:
            return self._offset_seconds

    @property
    def last_success(self) -> Optional[float]:
        with self._lock:
            return self._last_success

    def is_due(self) -> bool:
        """True when no calibration has succeeded or the interval has elapsed."""
        with self._lock:
            if self._last_success is None:
                return True
            return self._monotonic() - self._last_success >= self.interval_seconds

    def offset_from_date_header(self, date_header: Optional[str], local_ms: float) -> int:
        """Offset in whole seconds from an HTTP ``Date`` header."""
        if not date_header:
            raise ClockCalibrationFailure("Response has no Date header")
        try:
            server_time: datetime = parsedate_to_datetime(date_header)
        except (TypeError, ValueError) as e:
            raise ClockCalibrationFailure(f"Unparseable Date header {date_header!r}") from e
        server_ms = server_time.timestamp() * 1000
        return round((server_ms - local_ms) / 1000)

    async def calibrate(self, client: httpx.AsyncClient, host: str) -> int:
        """Refresh the offset if due, and return the offset to use.

        Never raises: calibration problems are logged and the best
        available offset is returned.
        """
        if not self.is_due():
            return self.offset_seconds

        try:
            try:
                response = await client.get(f"{host}{self.STATUS_PATH}")
            except httpx.HTTPError as e:
                raise ClockCalibrationFailure(f"{type(e).__name__}: {e}") from e
            local_ms = self._wall_clock() * 1000
            offset = self.offset_from_date_header(response.headers.get('date'), local_ms)
        except ClockCalibrationFailure as e:
            logger.warning(f"Clock calibration failed, keeping offset {self.offset_seconds}s | {e}")
            return self.offset_seconds

        with self._lock:
            self._offset_seconds = offset
            self._last_success = self._monotonic()
        logger.info(f"Clock calibrated: offset = {offset}s")
        return offset


# Shared by every client that does not bring its own
default_calibrator = ClockCalibrator()


# ============================================================================
# Client
# ============================================================================

class KalshiClient:
    """Client for the Kalshi trade API."""

    # elections subdomain serves ALL Kalshi markets
    PROD_HOST = "https://api.elections.kalshi.com"
    DEMO_HOST = "https://demo-api.kalshi.co"

    def __init__(self,
                 credential: Optional[ExchangeCredential] = None,
                 use_demo: bool = False,
                 timeout: float = 10.0,
                 calibrator: Optional[ClockCalibrator] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 load_env: bool = True):
        """Initialize Kalshi client.

        Args:
            credential: Signing credential; loaded from the environment when omitted
            use_demo: Use demo environment instead of production
            timeout: Per-request timeout in seconds
            calibrator: Clock calibrator (the shared default when omitted)
            transport: httpx transport override, used by tests
            load_env: Whether to look for a credential in the environment
        """
        self.host = self.DEMO_HOST if use_demo else self.PROD_HOST
        self.base_url = f"{self.host}{API_PREFIX}"
        self.use_demo = use_demo
        self.timeout = timeout
        self.calibrator = calibrator or default_calibrator
        self._transport = transport

        self._credential = credential
        self._credential_error: Optional[str] = None
        if credential is None and load_env:
            try:
                self._credential = ExchangeCredential.from_env()
            except CredentialError as e:
                self._credential_error = str(e)
                logger.error(f"Failed to load Kalshi credential: {e}")

        logger.info(f"KalshiClient initialized | Demo: {use_demo} | Auth: {self.has_credential}")

    @property
    def has_credential(self) -> bool:
        return self._credential is not None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _request(self,
                       method: str,
                       path: str,
                       params: Optional[dict] = None,
                       json: Optional[dict] = None,
                       signed: bool = False) -> dict:
        """Send one request and return its decoded JSON body.

        ``path`` is relative to /trade-api/v2. Signed requests fail with
        CredentialError before anything goes on the wire.
        """
        full_path = f"{API_PREFIX}{path}"
        headers = {'Accept': 'application/json'}

        if signed and self._credential is None:
            detail = self._credential_error or "No Kalshi credential configured"
            raise CredentialError(f"{detail} - cannot sign {method} {path}")

        async with self._client() as client:
            if signed:
                offset = await self.calibrator.calibrate(client, self.host)
                signed_request = build_signed_request(self._credential, method, full_path, offset)
                headers.update(signed_request.headers())

            try:
                response = await client.request(
                    method,
                    f"{self.host}{full_path}",
                    params=params,
                    json=json,
                    headers=headers,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise UpstreamFetchError(
                    "kalshi", f"{method} {path} rejected: {e.response.text[:200]}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.TimeoutException as e:
                raise UpstreamFetchError("kalshi", f"{method} {path} timed out after {self.timeout}s") from e
            except httpx.HTTPError as e:
                raise UpstreamFetchError("kalshi", f"{method} {path} failed: {type(e).__name__}: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFetchError("kalshi", f"{method} {path} returned non-JSON body") from e

    # =========================================================================
    # Public market data
    # =========================================================================

    async def get_events(self,
                         series_ticker: Optional[str] = None,
                         status: str = "open",
                         limit: int = 100,
                         cursor: Optional[str] = None) -> dict:
        """Fetch events (series of related markets).

        Args:
            series_ticker: Filter by series ticker (e.g., 'KXBTCD' for daily BTC)
            status: Event status (open, closed, settled)
            limit: Max results per page
            cursor: Pagination cursor
        """
        params: dict[str, Any] = {'status': status, 'limit': limit}
        if series_ticker:
            params['series_ticker'] = series_ticker
        if cursor:
            params['cursor'] = cursor
        return await self._request('GET', '/events', params=params)

    async def get_event(self, event_ticker: str, with_nested_markets: bool = False) -> dict:
        """Get single event by ticker."""
        params = {'with_nested_markets': 'true'} if with_nested_markets else None
        return await self._request('GET', f'/events/{event_ticker}', params=params)

    async def get_markets(self,
                          event_ticker: Optional[str] = None,
                          series_ticker: Optional[str] = None,
                          status: Optional[str] = None,
                          limit: int = 100,
                          cursor: Optional[str] = None) -> dict:
        """Fetch markets, optionally scoped to an event or series.

        Returns:
            Dict with 'markets' list and 'cursor' for pagination
        """
        params: dict[str, Any] = {'limit': limit}
        if event_ticker:
            params['event_ticker'] = event_ticker
        if series_ticker:
            params['series_ticker'] = series_ticker
        if status:
            params['status'] = status
        if cursor:
            params['cursor'] = cursor
        return await self._request('GET', '/markets', params=params)

    async def get_market(self, ticker: str) -> dict:
        """Get single market by ticker."""
        return await self._request('GET', f'/markets/{ticker}')

    # =========================================================================
    # Portfolio (requires auth)
    # =========================================================================

    async def get_balance(self) -> dict:
        """Get account balance in cents."""
        return await self._request('GET', '/portfolio/balance', signed=True)

    async def get_positions(self) -> dict:
        """Get current positions."""
        return await self._request('GET', '/portfolio/positions', signed=True)

    async def get_orders(self, status: Optional[str] = None) -> dict:
        """Get orders, optionally filtered by status ('resting', 'canceled', 'executed')."""
        params = {'status': status} if status else None
        return await self._request('GET', '/portfolio/orders', params=params, signed=True)

    async def place_order(self,
                          ticker: str,
                          side: str,
                          count: int,
                          price: Optional[int] = None,
                          order_type: str = "limit",
                          action: str = "buy") -> dict:
        """Place an order.

        Args:
            ticker: Market ticker
            side: 'yes' or 'no'
            count: Number of contracts
            price: Price in cents (1-99) for the chosen side; required for limit orders
            order_type: 'limit' or 'market'
            action: 'buy' or 'sell'

        Returns:
            Order response dict
        """
        side = side.lower()
        if side not in ('yes', 'no'):
            raise ValueError(f"side must be 'yes' or 'no', got {side!r}")
        if count < 1:
            raise ValueError("count must be at least 1")
        if order_type not in ('limit', 'market'):
            raise ValueError(f"order_type must be 'limit' or 'market', got {order_type!r}")

        body: dict[str, Any] = {
            'ticker': ticker,
            'action': action,
            'side': side,
            'count': count,
            'type': order_type,
        }
        if order_type == 'limit':
            if price is None or not 1 <= price <= 99:
                raise ValueError("limit orders need a price between 1 and 99 cents")
            # Limit prices are always quoted on the yes side
            body['yes_price'] = price if side == 'yes' else 100 - price

        logger.debug(f"Placing order: {body}")
        return await self._request('POST', '/portfolio/orders', json=body, signed=True)

    async def cancel_order(self, order_id: str) -> dict:
        """Cancel an open order."""
        return await self._request('DELETE', f'/portfolio/orders/{order_id}', signed=True)
