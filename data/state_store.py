"""JSON-file persistence for the monitor state.

The whole MonitorState is one pretty-printed JSON document. Every mutation
is a read-modify-write held under a single asyncio lock and finished with an
atomic rename, so concurrent writers in this process serialize instead of
overwriting each other, and readers never see a half-written file. File I/O
runs in a worker thread to keep disk latency off the event loop.
Writers in other processes are not coordinated.
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Optional, TypeVar
from pydantic import ValidationError
from loguru import logger

from data.errors import NotFoundError, StateFileCorruption
from data.models import GapObservation, MonitorState, Prediction, utcnow


T = TypeVar("T")

DEFAULT_STATE_PATH = "data/latency-monitor-state.json"


class MonitorStateStore:
    """Owns the monitor's persisted JSON document."""

    def __init__(self, path: str = DEFAULT_STATE_PATH):
        """Initialize the store.

        Args:
            path: Path to the JSON state file (created on first write)
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    # =========================================================================
    # Raw document I/O
    # =========================================================================

    def parse(self, raw: bytes) -> MonitorState:
        """Parse a state document, raising StateFileCorruption on bad input."""
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StateFileCorruption(str(self.path), f"not UTF-8 at byte {e.start}") from e
        try:
            return MonitorState.model_validate_json(text)
        except ValidationError as e:
            raise StateFileCorruption(str(self.path), f"{e.error_count()} validation error(s)") from e

    def _read(self) -> MonitorState:
        if not self.path.exists():
            return MonitorState()

        raw = self.path.read_bytes()
        try:
            return self.parse(raw)
        except StateFileCorruption as e:
            # Recovery drops history; keep the bad file around for inspection
            backup = self.path.with_name(f"{self.path.name}.corrupt")
            shutil.copyfile(self.path, backup)
            logger.error(f"{e} | starting from empty state, previous file copied to {backup}")
            return MonitorState()

    def _write(self, state: MonitorState) -> None:
        payload = state.model_dump_json(indent=2)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # =========================================================================
    # Public API
    # =========================================================================

    async def load(self) -> MonitorState:
        """Read the current state. Missing or corrupt files yield an empty state."""
        return await asyncio.to_thread(self._read)

    async def save(self, state: MonitorState) -> MonitorState:
        """Replace the whole document with ``state``."""
        async with self._lock:
            state.touch()
            await asyncio.to_thread(self._write, state)
        return state

    async def mutate(self, fn: Callable[[MonitorState], T]) -> tuple[MonitorState, T]:
        """Apply ``fn`` to a freshly loaded state and write it back.

        The load, the mutation and the write happen under one lock.

        Returns:
            (updated state, whatever ``fn`` returned)
        """
        async with self._lock:
            state = await asyncio.to_thread(self._read)
            result = fn(state)
            state.touch()
            await asyncio.to_thread(self._write, state)
        return state, result

    # =========================================================================
    # Mutations
    # =========================================================================

    async def append_gap(self, observation: GapObservation) -> MonitorState:
        """Append one gap observation."""
        state, _ = await self.mutate(lambda s: s.gaps_detected.append(observation))
        logger.debug(
            f"Gap recorded | ${observation.gap_usd:,.2f} {observation.direction.value} | "
            f"total={len(state.gaps_detected)}"
        )
        return state

    async def add_prediction(self, prediction: Prediction) -> MonitorState:
        """Append a new unresolved prediction."""
        state, _ = await self.mutate(lambda s: s.predictions.append(prediction))
        return state

    async def resolve_latest(self, market_ticker: str, outcome: int) -> tuple[MonitorState, int]:
        """Resolve the most recent open prediction for a ticker.

        Returns:
            (updated state, number of predictions resolved: 0 or 1)
        """
        def _resolve(state: MonitorState) -> int:
            try:
                prediction = state.latest_open_prediction(market_ticker)
            except NotFoundError:
                return 0
            prediction.resolve(outcome, when=utcnow())
            return 1

        return await self.mutate(_resolve)


# Singleton instance
_store_instance: Optional[MonitorStateStore] = None


def get_store(path: str = DEFAULT_STATE_PATH) -> MonitorStateStore:
    """Get or create the shared state store.

    Args:
        path: Path to the state file (used only on first call)

    Returns:
        MonitorStateStore instance
    """
    global _store_instance
    if _store_instance is None:
        _store_instance = MonitorStateStore(path)
    return _store_instance
