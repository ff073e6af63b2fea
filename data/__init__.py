"""Data module for Pydantic models, errors and the JSON state store."""

from .models import (
    Direction,
    GapObservation,
    Prediction,
    MonitorState,
)
from .errors import (
    GapWatchError,
    CredentialError,
    ClockCalibrationFailure,
    UpstreamFetchError,
    StateFileCorruption,
    NotFoundError,
)
from .state_store import MonitorStateStore, get_store

__all__ = [
    "Direction",
    "GapObservation",
    "Prediction",
    "MonitorState",
    "GapWatchError",
    "CredentialError",
    "ClockCalibrationFailure",
    "UpstreamFetchError",
    "StateFileCorruption",
    "NotFoundError",
    "MonitorStateStore",
    "get_store",
]
