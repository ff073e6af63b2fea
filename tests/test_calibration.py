"""Tests for Brier scoring of logged predictions."""

import pytest

from data.models import MonitorState, Prediction
from logic.calibration import brier_rating, brier_score, calibration_curve, prediction_summary


def resolved(prob: float, outcome: int, ticker: str = "T") -> Prediction:
    return Prediction(market_ticker=ticker, predicted_prob=prob, resolved=True, outcome=outcome)


class TestBrierScore:
    """Brier score on the 0-1 scale."""

    def test_two_predictions(self):
        """80% that hit and 30% that missed -> mean(0.04, 0.09)."""
        score = brier_score([resolved(80, 1), resolved(30, 0)])
        assert score == pytest.approx(0.065)

    def test_no_resolved_predictions_is_none(self):
        assert brier_score([]) is None
        assert brier_score([Prediction(market_ticker="T", predicted_prob=60)]) is None

    def test_unresolved_predictions_ignored(self):
        predictions = [resolved(80, 1), Prediction(market_ticker="T", predicted_prob=0)]
        assert brier_score(predictions) == pytest.approx(0.04)

    def test_perfect_forecast_is_zero_not_none(self):
        assert brier_score([resolved(100, 1), resolved(0, 0)]) == 0.0

    def test_coin_flip_is_quarter(self):
        assert brier_score([resolved(50, 1), resolved(50, 0)]) == pytest.approx(0.25)

    @pytest.mark.parametrize("score,label", [
        (None, "No data"),
        (0.05, "Excellent"),
        (0.15, "Good"),
        (0.22, "Fair"),
        (0.30, "Poor"),
    ])
    def test_rating(self, score, label):
        assert brier_rating(score) == label


class TestCalibrationCurve:
    """Binned reliability data."""

    def test_bins_by_probability(self):
        predictions = [resolved(15, 0), resolved(18, 1), resolved(85, 1)]
        curve = calibration_curve(predictions, n_bins=10)

        assert [b['count'] for b in curve] == [2, 1]
        assert curve[0]['bin_start'] == pytest.approx(0.1)
        assert curve[0]['mean_actual'] == 0.5
        assert curve[1]['mean_predicted'] == pytest.approx(0.85)

    def test_certainty_lands_in_last_bin(self):
        curve = calibration_curve([resolved(100, 1)], n_bins=4)
        assert curve[0]['bin_start'] == 0.75


class TestPredictionSummary:

    def test_summary_counts(self):
        state = MonitorState(predictions=[
            resolved(80, 1),
            resolved(30, 0),
            Prediction(market_ticker="T", predicted_prob=55),
        ])
        summary = prediction_summary(state)

        assert summary['total_predictions'] == 3
        assert summary['resolved_predictions'] == 2
        assert summary['brier_score'] == pytest.approx(0.065)
        assert summary['brier_rating'] == "Excellent"
        assert [b['count'] for b in summary['calibration']] == [1, 1]

    def test_resolved_without_outcome_not_counted(self):
        """Legacy rows flagged resolved with no outcome are neither counted nor scored."""
        state = MonitorState(predictions=[
            resolved(80, 1),
            Prediction(market_ticker="T", predicted_prob=30, resolved=True, outcome=None),
        ])
        summary = prediction_summary(state)

        assert summary['resolved_predictions'] == 1
        assert summary['brier_score'] == pytest.approx(0.04)

    def test_empty_state(self):
        summary = prediction_summary(MonitorState())
        assert summary['brier_score'] is None
        assert summary['brier_rating'] == "No data"
        assert summary['calibration'] == []
