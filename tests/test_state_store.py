"""
Tests for PositionStateStore: JSON round-trip, integer encoding, corrupt
file quarantine and backups.
"""
import json

import pytest

from core.models import TrailingStop
from infra.state_store import DEFAULT_ACCOUNT_STATE, PositionStateStore
from tests.helpers import make_position


@pytest.fixture
def state_store(tmp_path):
    return PositionStateStore(
        positions_file=str(tmp_path / "state" / "open_positions.json"),
        account_file=str(tmp_path / "state" / "account_state.json"),
    )


def test_positions_round_trip(state_store):
    first = make_position(token="A", quantity=10**20, cost=5 * 10**19)
    first.trailing_stop = TrailingStop.activate(10.0, 150.0)
    first.stop_loss = 90.0
    second = make_position(token="B", pattern_tag="smart_money")

    state_store.save_positions([first, second])
    loaded = state_store.load_positions()

    assert loaded == [first, second]


def test_integers_written_as_strings(state_store):
    state_store.save_positions([make_position(quantity=10**20, cost=7)])

    document = json.loads(state_store.positions_file.read_text())
    assert document["version"] == 1
    assert document["positions"][0]["quantity"] == "100000000000000000000"
    assert document["positions"][0]["initial_cost_basis"] == "7"


def test_missing_file_loads_empty(state_store):
    assert state_store.load_positions() == []
    assert state_store.load_account() == DEFAULT_ACCOUNT_STATE


def test_corrupt_positions_file_is_quarantined(state_store):
    state_store.positions_file.write_text("{not json")

    assert state_store.load_positions() == []
    assert not state_store.positions_file.exists()
    aside = list(state_store.positions_file.parent.glob("open_positions.json.corrupt-*"))
    assert len(aside) == 1


def test_malformed_entries_are_skipped(state_store):
    good = make_position(token="GOOD")
    document = {"version": 1, "positions": [good.to_dict(), {"id": "broken"}, {**good.to_dict(), "quantity": "x"}]}
    state_store.positions_file.write_text(json.dumps(document))

    assert [p.id for p in state_store.load_positions()] == [good.id]


def test_positions_list_missing_is_quarantined(state_store):
    state_store.positions_file.write_text(json.dumps({"version": 1}))
    assert state_store.load_positions() == []
    assert not state_store.positions_file.exists()


def test_account_round_trip_and_guard_hydration(state_store, guard_factory):
    guard = guard_factory()
    guard.record_trade(-25_000)
    state_store.save_account(guard.export_state())

    raw = json.loads(state_store.account_file.read_text())
    assert raw["current_balance"] == "975000"

    loaded = state_store.load_account()
    assert loaded["current_balance"] == 975_000
    assert loaded["high_water_mark"] == 1_000_000

    restored = guard_factory(initial_state=loaded)
    assert restored.get_metrics()["current_balance"] == 975_000
    assert restored.get_metrics()["daily_loss_pct"] == pytest.approx(2.5)


def test_account_with_bad_balance_falls_back_to_defaults(state_store):
    state_store.account_file.write_text(json.dumps({"current_balance": "lots"}))
    assert state_store.load_account() == DEFAULT_ACCOUNT_STATE
    assert not state_store.account_file.exists()


def test_create_backup(state_store, tmp_path):
    state_store.save_positions([make_position()])
    state_store.save_account({"current_balance": 1})

    copied = state_store.create_backup(str(tmp_path / "backups"))

    assert sorted(p.name for p in copied) == ["account_state.json", "open_positions.json"]
    assert all(p.exists() for p in copied)


def test_no_temp_files_left_behind(state_store):
    for _ in range(3):
        state_store.save_positions([make_position()])
    leftovers = list(state_store.positions_file.parent.glob("*.tmp"))
    assert leftovers == []
