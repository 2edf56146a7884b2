"""
Durable per-window bookkeeping.

Rows are keyed by "{market}:{window_id}" and only exist to survive restarts
(previous price, condition id, outcome indices). Writes are debounced and
best-effort: a failed write is logged and trading continues on memory.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

from ..errors import PersistenceWriteError
from ..utils.clock import SystemClock
from ..utils.logger import get_logger

logger = get_logger("state")


@dataclass
class PersistedWindowState:
    """Restart bookkeeping for one market window."""
    market: str
    slug: str
    condition_id: str
    up_index: int
    down_index: int
    previous_price: Optional[float] = None
    last_updated: Optional[str] = None  # ISO-8601

    @classmethod
    def from_dict(cls, data: dict) -> "PersistedWindowState":
        return cls(
            market=data.get("market", ""),
            slug=data.get("slug", ""),
            condition_id=data.get("condition_id", ""),
            up_index=int(data.get("up_index", 0)),
            down_index=int(data.get("down_index", 1)),
            previous_price=data.get("previous_price"),
            last_updated=data.get("last_updated"),
        )


def state_key(market: str, window_id: str) -> str:
    return f"{market}:{window_id}"


class StateStore(ABC):
    """Key-value persistence port."""

    @abstractmethod
    def load(self) -> dict[str, PersistedWindowState]:
        pass

    @abstractmethod
    def save(self, rows: dict[str, PersistedWindowState]) -> None:
        """Schedule a save; may be debounced."""
        pass

    @abstractmethod
    async def flush(self) -> None:
        """Write any pending save now."""
        pass


class JsonStateStore(StateStore):
    """
    JSON file store with debounced writes.

    save() remembers the latest snapshot and arms a single delayed write;
    saves arriving inside the debounce interval collapse into it.
    """

    def __init__(
        self,
        path: Path,
        debounce_seconds: float = 0.5,
        clock: Optional[SystemClock] = None
    ):
        """
        Initialize store.

        Args:
            path: JSON file location
            debounce_seconds: Delay before a scheduled write runs
            clock: Sleep provider
        """
        self.path = Path(path)
        self.debounce_seconds = debounce_seconds
        self.clock = clock or SystemClock()

        self._pending: Optional[dict] = None
        self._task: Optional[asyncio.Task] = None

    def load(self) -> dict[str, PersistedWindowState]:
        """Read all rows; a missing or unreadable file yields an empty mapping."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load state file {self.path}: {e}")
            return {}

        return {
            key: PersistedWindowState.from_dict(row)
            for key, row in data.items()
            if isinstance(row, dict)
        }

    def save(self, rows: dict[str, PersistedWindowState]) -> None:
        self._pending = {key: asdict(row) for key, row in rows.items()}
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._delayed_write())

    async def flush(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._write_pending()

    async def _delayed_write(self) -> None:
        await self.clock.sleep(self.debounce_seconds)
        await self._write_pending()

    async def _write_pending(self) -> None:
        if self._pending is None:
            return
        snapshot, self._pending = self._pending, None
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write_file, snapshot)
        except PersistenceWriteError as e:
            logger.error(f"State save failed: {e}")

    def _write_file(self, snapshot: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp, "w") as f:
                json.dump(snapshot, f, indent=2)
            tmp.replace(self.path)
        except OSError as e:
            raise PersistenceWriteError(f"Could not write {self.path}: {e}") from e
