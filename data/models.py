"""Pydantic V2 models for the GapWatch monitor state.

This module defines the records persisted in the monitor's JSON state file:
- GapObservation: one spot-vs-implied price comparison
- Prediction: a logged forecast, later resolved to an outcome
- MonitorState: the whole persisted document
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from pydantic import AliasChoices, BaseModel, Field, computed_field, field_validator

from data.errors import NotFoundError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from older state files as UTC."""
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class Direction(str, Enum):
    """Which side of the implied price the reference price sits on."""
    UP = "UP"
    DOWN = "DOWN"


class GapObservation(BaseModel):
    """A single spot-vs-implied price comparison.

    Attributes:
        timestamp: When the observation was taken
        reference_price: Spot price from the reference exchange
        implied_price: Strike of the market nearest to 50% probability
        gap_usd: Absolute dollar difference between the two
        direction: UP if reference > implied, else DOWN
        stale_seconds: Age of the implied quote, when known
        event_ticker: Kalshi event the implied price came from
    """
    timestamp: datetime = Field(default_factory=utcnow)
    # Older state files written by the dashboard use binance_price / kalshi_implied
    reference_price: float = Field(
        ..., gt=0.0,
        validation_alias=AliasChoices("reference_price", "binance_price"),
    )
    implied_price: float = Field(
        ..., gt=0.0,
        validation_alias=AliasChoices("implied_price", "kalshi_implied"),
    )
    gap_usd: float = Field(..., ge=0.0, description="Absolute gap in USD")
    direction: Direction
    stale_seconds: Optional[float] = Field(None, ge=0.0)
    event_ticker: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class Prediction(BaseModel):
    """A logged forecast on a market.

    Probabilities are stored on the 0-100 scale the dashboard uses.
    A prediction is resolved exactly once; ``resolve`` refuses a second call.
    """
    timestamp: datetime = Field(default_factory=utcnow)
    market_ticker: str = Field(..., min_length=1)
    predicted_prob: float = Field(..., ge=0.0, le=100.0, description="Probability 0-100")
    notes: str = ""
    resolved: bool = False
    outcome: Optional[int] = None
    resolved_at: Optional[datetime] = None

    @field_validator("outcome")
    @classmethod
    def validate_outcome(cls, v: Optional[int]) -> Optional[int]:
        """Outcomes are binary."""
        if v is not None and v not in (0, 1):
            raise ValueError("Outcome must be 0 or 1")
        return v

    @field_validator("timestamp", "resolved_at")
    @classmethod
    def validate_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @computed_field
    @property
    def probability(self) -> float:
        """Predicted probability on the 0-1 scale."""
        return round(self.predicted_prob / 100.0, 6)

    def resolve(self, outcome: int, when: Optional[datetime] = None) -> None:
        """Mark this prediction resolved with a binary outcome."""
        if self.resolved:
            raise ValueError(f"Prediction for {self.market_ticker} already resolved")
        if outcome not in (0, 1):
            raise ValueError("Outcome must be 0 or 1")
        self.resolved = True
        self.outcome = outcome
        self.resolved_at = when or utcnow()


class MonitorState(BaseModel):
    """The monitor's persisted document, read and written as a whole."""
    predictions: list[Prediction] = Field(default_factory=list)
    gaps_detected: list[GapObservation] = Field(default_factory=list)
    last_update: datetime = Field(default_factory=utcnow)

    @field_validator("last_update")
    @classmethod
    def validate_last_update(cls, v: datetime) -> datetime:
        return as_utc(v)

    def gaps_since(self, cutoff: datetime) -> list[GapObservation]:
        return [g for g in self.gaps_detected if g.timestamp >= cutoff]

    def gaps_in_window(self, hours: float = 24, now: Optional[datetime] = None) -> list[GapObservation]:
        """Gaps observed within the trailing window."""
        now = now or utcnow()
        return self.gaps_since(now - timedelta(hours=hours))

    def resolved_predictions(self) -> list[Prediction]:
        """Predictions with a recorded outcome (the set that gets scored)."""
        return [p for p in self.predictions if p.resolved and p.outcome is not None]

    def latest_open_prediction(self, market_ticker: str) -> Prediction:
        """Most recent unresolved prediction for a ticker (newest-first scan).

        Raises:
            NotFoundError: nothing is open for the ticker
        """
        for prediction in reversed(self.predictions):
            if prediction.market_ticker == market_ticker and not prediction.resolved:
                return prediction
        raise NotFoundError(f"No open prediction for {market_ticker}")

    def touch(self) -> None:
        self.last_update = utcnow()
