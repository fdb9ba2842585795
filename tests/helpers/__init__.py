"""Test helpers for the exit engine test suite"""

from tests.helpers.stubs import (
    FakeClock,
    RecordingOrderSink,
    alert_texts,
    ScriptedPriceSource,
    make_position,
    risk_config,
)

__all__ = [
    "FakeClock",
    "RecordingOrderSink",
    "alert_texts",
    "ScriptedPriceSource",
    "make_position",
    "risk_config",
]
