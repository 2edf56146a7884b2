"""
Tests for persisted window state and the holdings ledger.
"""

import json

import pytest

from updown_bot.errors import PersistenceWriteError
from updown_bot.storage.holdings import HoldingsLedger
from updown_bot.storage.state_store import JsonStateStore, PersistedWindowState, state_key


class NoWaitClock:
    def time(self) -> float:
        return 0.0

    async def sleep(self, seconds: float) -> None:
        return None


def make_row(price=None) -> PersistedWindowState:
    return PersistedWindowState(
        market="btc",
        slug="btc-updown-15m-1700000100",
        condition_id="cond-1",
        up_index=0,
        down_index=1,
        previous_price=price,
        last_updated="2024-01-01T12:00:00+00:00",
    )


class TestJsonStateStore:
    """Tests for the debounced JSON store."""

    def test_load_missing_file(self, tmp_path):
        store = JsonStateStore(tmp_path / "state.json")
        assert store.load() == {}

    def test_load_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")

        assert JsonStateStore(path).load() == {}

    @pytest.mark.asyncio
    async def test_flush_writes_latest_snapshot(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        store = JsonStateStore(path, debounce_seconds=60.0)
        key = state_key("btc", "btc-updown-15m-1700000100")

        store.save({key: make_row(0.50)})
        store.save({key: make_row(0.53)})
        await store.flush()

        data = json.loads(path.read_text())
        assert data[key]["previous_price"] == 0.53
        assert store.load()[key] == make_row(0.53)

    @pytest.mark.asyncio
    async def test_debounced_write(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(path, debounce_seconds=0.0, clock=NoWaitClock())

        store.save({"btc:w": make_row(0.50)})
        await store._task

        assert json.loads(path.read_text())["btc:w"]["condition_id"] == "cond-1"

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        store = JsonStateStore(blocker / "state.json")

        store.save({"btc:w": make_row()})
        await store.flush()

        assert not (blocker / "state.json").exists()

    def test_write_file_raises_persistence_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        store = JsonStateStore(blocker / "state.json")

        with pytest.raises(PersistenceWriteError):
            store._write_file({})

    def test_row_from_dict_defaults(self):
        row = PersistedWindowState.from_dict({"market": "eth", "slug": "s", "condition_id": "c"})
        assert row.up_index == 0
        assert row.down_index == 1
        assert row.previous_price is None


class TestHoldingsLedger:
    """Tests for HoldingsLedger."""

    def test_add_and_get(self):
        ledger = HoldingsLedger()

        assert ledger.add("cond-1", "up", 5.0) == 5.0
        assert ledger.add("cond-1", "up", 2.5) == 7.5
        assert ledger.get("cond-1", "up") == 7.5
        assert ledger.get("cond-1", "down") == 0.0

    def test_remove_floors_and_prunes(self):
        ledger = HoldingsLedger()
        ledger.add("cond-1", "up", 5.0)

        assert ledger.remove("cond-1", "up", 8.0) == 0.0
        assert ledger.condition_ids() == []
        assert ledger.remove("cond-1", "up", 1.0) == 0.0

    def test_clear(self):
        ledger = HoldingsLedger()
        ledger.add("cond-1", "up", 5.0)
        ledger.add("cond-2", "up", 1.0)

        ledger.clear("cond-1")

        assert ledger.tokens("cond-1") == {}
        assert ledger.condition_ids() == ["cond-2"]

    def test_persists_to_file(self, tmp_path):
        path = tmp_path / "holdings.json"
        HoldingsLedger(path).add("cond-1", "down", 3.0)

        assert HoldingsLedger(path).get("cond-1", "down") == 3.0

    def test_record_fill_books_spend(self):
        ledger = HoldingsLedger()

        ledger.record_fill("cond-1", "up", 5.0, 0.57)
        ledger.record_fill("cond-1", "down", 2.0, 0.42)
        ledger.record_fill("cond-1", "down", 3.0, 0.42)

        assert ledger.get("cond-1", "down") == 5.0
        assert ledger.spend("cond-1") == pytest.approx(4.95)
        assert ledger.spend("cond-2") == 0.0

    def test_clear_drops_spend(self):
        ledger = HoldingsLedger()
        ledger.record_fill("cond-1", "up", 5.0, 0.57)

        ledger.clear("cond-1")

        assert ledger.spend("cond-1") == 0.0

    def test_spend_persists_to_file(self, tmp_path):
        path = tmp_path / "holdings.json"
        HoldingsLedger(path).record_fill("cond-1", "up", 5.0, 0.5)

        reloaded = HoldingsLedger(path)
        assert reloaded.get("cond-1", "up") == 5.0
        assert reloaded.spend("cond-1") == pytest.approx(2.5)
