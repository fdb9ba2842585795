"""
Tests for the core position model: immutability, lifecycle transitions,
trailing stop ratchet and lossless serialization.
"""
from datetime import datetime, timezone

import pytest

from core.models import InvalidTransition, Position, PositionStatus, TrailingStop
from tests.helpers import make_position


def test_position_id_defaults_to_token_and_open_time():
    opened = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    position = make_position(token="Mint1", entry_timestamp=opened)
    assert position.id == f"Mint1-{int(opened.timestamp() * 1000)}"
    assert position.current_price == position.entry_price
    assert position.status == PositionStatus.OPEN


@pytest.mark.parametrize("field_name,value", [
    ("entry_price", 1.0),
    ("quantity", 5),
    ("entry_timestamp", datetime(2020, 1, 1, tzinfo=timezone.utc)),
    ("initial_cost_basis", 1),
    ("token_address", "other"),
    ("id", "other"),
])
def test_entry_fields_are_immutable(field_name, value):
    position = make_position()
    with pytest.raises(AttributeError):
        setattr(position, field_name, value)


def test_mutable_fields_can_change():
    position = make_position()
    position.current_price = 123.0
    position.stop_loss = 80.0
    assert position.current_price == 123.0
    assert position.stop_loss == 80.0


@pytest.mark.parametrize("kwargs", [
    {"entry_price": 0},
    {"entry_price": -1.0},
    {"quantity": 0},
    {"quantity": 1.5},
    {"token": ""},
])
def test_invalid_positions_rejected(kwargs):
    with pytest.raises(ValueError):
        make_position(**kwargs)


def test_lifecycle_transitions():
    position = make_position()
    position.transition(PositionStatus.CLOSING)
    position.transition(PositionStatus.OPEN)
    position.transition(PositionStatus.CLOSING)
    position.transition(PositionStatus.CLOSED)

    with pytest.raises(InvalidTransition):
        position.transition(PositionStatus.OPEN)


def test_open_cannot_jump_to_closed():
    position = make_position()
    with pytest.raises(InvalidTransition):
        position.transition(PositionStatus.CLOSED)


def test_trailing_stop_high_water_never_decreases():
    trailing = TrailingStop.activate(10.0, 100.0)
    prices = [101.0, 99.0, 105.0, 104.0, 104.5, 110.0, 90.0, 110.0, 111.0]

    highs = [trailing.highest_price_seen]
    stops = [trailing.stop_price]
    for price in prices:
        moved = trailing.observe(price)
        assert moved == (trailing.highest_price_seen > highs[-1])
        if not moved:
            assert trailing.stop_price == stops[-1]
        highs.append(trailing.highest_price_seen)
        stops.append(trailing.stop_price)

    assert highs == sorted(highs)
    assert trailing.highest_price_seen == 111.0
    assert trailing.stop_price == pytest.approx(99.9)


def test_serialization_preserves_large_integers():
    position = make_position(quantity=123_456_789_012_345_678_901, cost=98_765_432_109_876_543_210)
    position.trailing_stop = TrailingStop.activate(10.0, 120.0)

    data = position.to_dict()
    assert data["quantity"] == "123456789012345678901"
    assert data["initial_cost_basis"] == "98765432109876543210"

    restored = Position.from_dict(data)
    assert restored == position
    assert restored.quantity == 123_456_789_012_345_678_901
