"""Logic module for gap detection and forecast scoring."""

from .gap_monitor import (
    ArbitrageMonitor,
    GapResult,
    GapStatus,
    MarketCandidate,
    MonitorConfig,
    classify_gap,
    parse_strike,
    select_implied_market,
)
from .calibration import brier_score, brier_rating, calibration_curve, prediction_summary

__all__ = [
    # Gap monitor
    "ArbitrageMonitor",
    "GapResult",
    "GapStatus",
    "MarketCandidate",
    "MonitorConfig",
    "classify_gap",
    "parse_strike",
    "select_implied_market",
    # Calibration
    "brier_score",
    "brier_rating",
    "calibration_curve",
    "prediction_summary",
]
