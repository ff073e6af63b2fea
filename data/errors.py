"""Error taxonomy for GapWatch.

Every failure the monitor or the exchange client can report is one of these.
Callers decide per step whether an error is fatal (reference price, signing)
or degrades to ``None`` (event and market discovery).
"""

from typing import Optional


class GapWatchError(Exception):
    """Base class for all GapWatch errors."""


class CredentialError(GapWatchError):
    """Signing key is missing or unusable. No request may be sent."""


class ClockCalibrationFailure(GapWatchError):
    """Exchange clock could not be read. Never escapes the calibrator."""


class UpstreamFetchError(GapWatchError):
    """An external HTTP call failed, timed out or returned non-2xx."""

    def __init__(self, source: str, detail: str, status_code: Optional[int] = None):
        self.source = source
        self.detail = detail
        self.status_code = status_code
        suffix = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{source}: {detail}{suffix}")

    def to_dict(self) -> dict:
        return {
            'error': 'upstream_fetch_failed',
            'source': self.source,
            'detail': self.detail,
            'status_code': self.status_code,
        }


class StateFileCorruption(GapWatchError):
    """Persisted monitor state is not valid JSON or fails schema validation."""

    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Corrupt state file {path}: {detail}")


class NotFoundError(GapWatchError):
    """No record matched the lookup."""
