"""Latency-gap monitor.

Compares a reference spot price against the strike Kalshi's market currently
treats as fair value (the strike whose mid probability is closest to 50%),
and keeps the gap history and logged forecasts in the JSON state store.

Each poll is a one-shot pipeline:
1. Reference price (mandatory; failure aborts the poll)
2. Newest open event for the series (optional; failure -> no implied price)
3. Market nearest to 50% -> implied price
4. Gap and classification
5. Optional append of a GapObservation
6. Prediction history and Brier score
"""

import math
import re
from dataclasses import dataclass, field
from typing import Optional
from loguru import logger

from data.errors import UpstreamFetchError
from data.models import Direction, GapObservation, MonitorState, Prediction
from data.state_store import MonitorStateStore
from logic.calibration import prediction_summary
from services.kalshi_client import KalshiClient
from services.price_feed import SpotPriceFeed, SpotQuote


# "$95,000 or above", "$94,750.00 to 94,999.99", "$95000"
STRIKE_PATTERN = re.compile(r"^\s*\$((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?)(?:\s|$)")


def parse_strike(text: Optional[str]) -> Optional[float]:
    """Dollar strike at the start of a market subtitle.

    Grammar: ``$``, digits with optional comma thousands separators, optional
    decimals, then whitespace or end of text. Anything else, including a
    zero strike, returns None.
    """
    if not isinstance(text, str) or not text:
        return None
    match = STRIKE_PATTERN.match(text)
    if not match:
        return None
    strike = float(match.group(1).replace(',', ''))
    return strike if strike > 0 else None


def _cents(market: dict, key: str, default: float) -> float:
    value = market.get(key)
    if value is None:
        return default
    cents = float(value)
    if not math.isfinite(cents):
        raise ValueError(f"{key} {value!r} is not a finite number")
    return cents


def market_mid(market: dict) -> float:
    """Mid yes probability in cents. Missing bid counts as 0, missing ask as 100.

    Raises:
        ValueError: a quote is present but not numeric
    """
    return (_cents(market, 'yes_bid', 0) + _cents(market, 'yes_ask', 100)) / 2


@dataclass
class MarketCandidate:
    """A strike market considered for the implied price."""
    ticker: str
    strike: float
    mid_prob: float
    yes_bid: Optional[int]
    yes_ask: Optional[int]
    volume: float
    subtitle: str

    @property
    def distance_from_fair(self) -> float:
        return abs(self.mid_prob - 50)

    def to_dict(self) -> dict:
        return {
            'ticker': self.ticker,
            'strike': self.strike,
            'mid_prob': self.mid_prob,
            'yes_bid': self.yes_bid,
            'yes_ask': self.yes_ask,
            'volume': self.volume,
            'subtitle': self.subtitle,
        }


def select_implied_market(markets: list[dict], limit: int = 10) -> list[MarketCandidate]:
    """Rank markets by closeness of their mid probability to 50%.

    Markets whose subtitle has no parseable strike, or whose quotes are not
    numeric, are skipped.

    Returns:
        Up to ``limit`` candidates; the first one sets the implied price
    """
    candidates = []
    for market in markets:
        if not isinstance(market, dict):
            logger.debug(f"Skipping malformed market entry {market!r}")
            continue
        subtitle = market.get('yes_sub_title') or market.get('subtitle') or ''
        strike = parse_strike(subtitle)
        if strike is None:
            logger.debug(f"Skipping {market.get('ticker', '?')}: no strike in {subtitle!r}")
            continue
        try:
            mid_prob = market_mid(market)
            volume = _cents(market, 'volume', 0) / 100
        except (TypeError, ValueError) as e:
            logger.debug(f"Skipping {market.get('ticker', '?')}: bad quote ({e})")
            continue
        candidates.append(MarketCandidate(
            ticker=market.get('ticker', ''),
            strike=strike,
            mid_prob=mid_prob,
            yes_bid=market.get('yes_bid'),
            yes_ask=market.get('yes_ask'),
            volume=volume,
            subtitle=subtitle,
        ))

    candidates.sort(key=lambda c: c.distance_from_fair)
    return candidates[:limit]


@dataclass
class GapResult:
    """Gap between reference and implied price."""
    usd: float
    direction: Direction
    is_opportunity: bool

    def to_dict(self) -> dict:
        return {
            'usd': round(self.usd, 2),
            'direction': self.direction.value,
            'is_opportunity': self.is_opportunity,
        }


def classify_gap(reference_price: float,
                 implied_price: Optional[float],
                 threshold_usd: float = 150.0) -> Optional[GapResult]:
    """Absolute gap, direction and whether it clears the opportunity threshold."""
    if implied_price is None:
        return None
    gap = abs(reference_price - implied_price)
    direction = Direction.UP if reference_price > implied_price else Direction.DOWN
    return GapResult(usd=gap, direction=direction, is_opportunity=gap > threshold_usd)


@dataclass
class MonitorConfig:
    """Configuration for the gap monitor."""

    # Kalshi series whose strikes define the implied price (daily BTC)
    series_ticker: str = "KXBTCD"
    events_limit: int = 3
    markets_limit: int = 50

    # Gaps above this many dollars are flagged as opportunities
    opportunity_threshold_usd: float = 150.0

    # Reporting
    history_window_hours: float = 24.0
    candidate_limit: int = 10


@dataclass
class GapStatus:
    """Result of one poll."""
    reference: SpotQuote
    event_ticker: Optional[str]
    candidates: list[MarketCandidate]
    gap: Optional[GapResult]
    gaps_window: list[GapObservation]
    history: dict
    recorded: bool = False
    errors: list[dict] = field(default_factory=list)

    @property
    def implied_price(self) -> Optional[float]:
        return self.candidates[0].strike if self.candidates else None

    def to_dict(self) -> dict:
        return {
            'reference': self.reference.to_dict(),
            'implied': {
                'price': self.implied_price,
                'event': self.event_ticker,
                'candidate_markets': [c.to_dict() for c in self.candidates],
            },
            'gap': self.gap.to_dict() if self.gap else {
                'usd': None, 'direction': None, 'is_opportunity': False,
            },
            'history': {
                'gaps_24h': [g.model_dump(mode='json') for g in self.gaps_window],
                **self.history,
            },
            'recorded': self.recorded,
            'errors': self.errors,
        }


class ArbitrageMonitor:
    """Polls spot vs. implied price and maintains the prediction log."""

    def __init__(self,
                 kalshi: KalshiClient,
                 price_feed: SpotPriceFeed,
                 store: MonitorStateStore,
                 config: Optional[MonitorConfig] = None):
        self.kalshi = kalshi
        self.price_feed = price_feed
        self.store = store
        self.config = config or MonitorConfig()

        logger.info(
            f"ArbitrageMonitor initialized | Series: {self.config.series_ticker} | "
            f"Threshold: ${self.config.opportunity_threshold_usd:,.0f} | State: {store.path}"
        )

    # =========================================================================
    # Poll cycle
    # =========================================================================

    async def discover_event(self) -> Optional[str]:
        """Ticker of the newest open event in the series, or None."""
        result = await self.kalshi.get_events(
            series_ticker=self.config.series_ticker,
            status="open",
            limit=self.config.events_limit,
        )
        events = [e for e in (result.get('events') or []) if isinstance(e, dict)]
        if not events:
            return None

        # Prefer explicit open times; otherwise the API's listing order
        dated = [e for e in events if isinstance(e.get('open_time'), str)]
        event = max(dated, key=lambda e: e['open_time']) if dated else events[0]
        return event.get('event_ticker')

    async def implied_candidates(self, event_ticker: str) -> list[MarketCandidate]:
        result = await self.kalshi.get_markets(
            event_ticker=event_ticker,
            limit=self.config.markets_limit,
        )
        return select_implied_market(result.get('markets') or [], limit=self.config.candidate_limit)

    async def poll(self, record: bool = False) -> GapStatus:
        """Run one poll cycle.

        Args:
            record: Append a GapObservation when a gap could be computed

        Raises:
            UpstreamFetchError: the reference price could not be fetched
        """
        reference = await self.price_feed.get_spot()

        errors: list[dict] = []
        event_ticker: Optional[str] = None
        candidates: list[MarketCandidate] = []
        try:
            event_ticker = await self.discover_event()
            if event_ticker:
                candidates = await self.implied_candidates(event_ticker)
            else:
                logger.info(f"No open {self.config.series_ticker} event - no implied price")
        except UpstreamFetchError as e:
            logger.warning(f"Kalshi discovery degraded: {e}")
            errors.append(e.to_dict())

        implied = candidates[0].strike if candidates else None
        gap = classify_gap(reference.price, implied, self.config.opportunity_threshold_usd)

        recorded = False
        if record and gap is not None:
            observation = GapObservation(
                timestamp=reference.timestamp,
                reference_price=reference.price,
                implied_price=implied,
                gap_usd=round(gap.usd, 2),
                direction=gap.direction,
                event_ticker=event_ticker,
            )
            state = await self.store.append_gap(observation)
            recorded = True
        else:
            state = await self.store.load()

        if gap is not None:
            flag = "OPPORTUNITY" if gap.is_opportunity else "no edge"
            logger.info(
                f"Gap | Spot ${reference.price:,.2f} ({reference.source}) vs implied ${implied:,.0f} "
                f"| ${gap.usd:,.2f} {gap.direction.value} | {flag}"
            )

        return GapStatus(
            reference=reference,
            event_ticker=event_ticker,
            candidates=candidates,
            gap=gap,
            gaps_window=state.gaps_in_window(self.config.history_window_hours),
            history=prediction_summary(state),
            recorded=recorded,
            errors=errors,
        )

    # =========================================================================
    # Prediction log
    # =========================================================================

    async def log_prediction(self, market_ticker: str, predicted_prob: float,
                             notes: str = "") -> MonitorState:
        """Record a new unresolved forecast (probability on the 0-100 scale).

        Raises:
            ValueError: ticker empty or probability outside 0-100
        """
        prediction = Prediction(
            market_ticker=market_ticker,
            predicted_prob=predicted_prob,
            notes=notes or "",
        )
        state = await self.store.add_prediction(prediction)
        logger.info(f"Prediction logged | {market_ticker} @ {prediction.predicted_prob:.1f}%")
        return state

    async def resolve_prediction(self, market_ticker: str, outcome: int) -> tuple[MonitorState, int]:
        """Resolve the most recent open forecast for a ticker.

        Returns:
            (state, number resolved). Zero means nothing was open for the
            ticker; that is reported, not raised.
        """
        if not market_ticker:
            raise ValueError("market_ticker is required")
        if outcome not in (0, 1):
            raise ValueError("Outcome must be 0 or 1")

        state, resolved = await self.store.resolve_latest(market_ticker, outcome)
        if resolved:
            logger.info(f"Prediction resolved | {market_ticker} -> {outcome}")
        else:
            logger.warning(f"No open prediction for {market_ticker} - nothing resolved")
        return state, resolved
