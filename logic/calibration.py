"""Forecast scoring for logged predictions.

Predictions are stored on the 0-100 scale the dashboard uses; outcomes are
0 or 1. Scores are computed on the 0-1 scale, so every stored probability
is divided by 100 first.
"""

from typing import Iterable, Optional

from data.models import MonitorState, Prediction


def brier_score(predictions: Iterable[Prediction]) -> Optional[float]:
    """Compute the Brier score of the resolved predictions.

    Brier score = mean((probability - outcome)^2)
    Lower is better. Perfect = 0, always saying 50% = 0.25

    Returns:
        The score, or None when nothing has resolved (no data is not
        the same as perfect calibration)
    """
    total = 0.0
    count = 0
    for prediction in predictions:
        if not prediction.resolved or prediction.outcome is None:
            continue
        total += (prediction.probability - prediction.outcome) ** 2
        count += 1

    if count == 0:
        return None
    return round(total / count, 6)


def brier_rating(score: Optional[float]) -> str:
    """Dashboard label for a Brier score."""
    if score is None:
        return "No data"
    if score < 0.1:
        return "Excellent"
    if score < 0.2:
        return "Good"
    if score < 0.25:
        return "Fair"
    return "Poor"


def calibration_curve(predictions: Iterable[Prediction], n_bins: int = 10) -> list[dict]:
    """Bin resolved predictions by probability and compare to the hit rate.

    Args:
        predictions: Predictions to bin; unresolved ones are ignored
        n_bins: Number of equal-width bins over 0-1

    Returns:
        One dict per non-empty bin with mean predicted and mean actual
    """
    bins = [{"bin_start": i / n_bins, "bin_end": (i + 1) / n_bins,
             "count": 0, "sum_pred": 0.0, "sum_actual": 0.0}
            for i in range(n_bins)]

    for prediction in predictions:
        if not prediction.resolved or prediction.outcome is None:
            continue
        prob = prediction.probability
        bin_idx = min(int(prob * n_bins), n_bins - 1)
        bins[bin_idx]['count'] += 1
        bins[bin_idx]['sum_pred'] += prob
        bins[bin_idx]['sum_actual'] += prediction.outcome

    return [
        {
            "bin_start": b['bin_start'],
            "bin_end": b['bin_end'],
            "count": b['count'],
            "mean_predicted": round(b['sum_pred'] / b['count'], 4),
            "mean_actual": round(b['sum_actual'] / b['count'], 4),
        }
        for b in bins if b['count'] > 0
    ]


def prediction_summary(state: MonitorState) -> dict:
    """Counts and score for the history block of the gap status."""
    resolved = state.resolved_predictions()
    score = brier_score(resolved)
    return {
        'total_predictions': len(state.predictions),
        'resolved_predictions': len(resolved),
        'brier_score': score,
        'brier_rating': brier_rating(score),
        'calibration': calibration_curve(resolved),
    }
