"""Services module for the Kalshi client, spot price feed and HTTP server."""

from .kalshi_client import (
    ClockCalibrator,
    ExchangeCredential,
    KalshiClient,
    SignedRequest,
    build_signed_request,
    default_calibrator,
)
from .price_feed import SpotPriceFeed, SpotQuote

__all__ = [
    "ClockCalibrator",
    "ExchangeCredential",
    "KalshiClient",
    "SignedRequest",
    "build_signed_request",
    "default_calibrator",
    "SpotPriceFeed",
    "SpotQuote",
]
