"""
End-to-end tests for ExitEngineRunner with a scripted price source and the
dry-run order sink.
"""
import pytest

from core.events import EventKind
from core.models import utcnow
from infra.dry_run import DryRunOrderSink
from runner.main_loop import ExitEngineRunner
from tests.helpers import ScriptedPriceSource, make_position
from tools.config_validator import build_engine_config


@pytest.fixture
def engine_config(tmp_path):
    return build_engine_config({
        "persistence": {
            "positions_file": str(tmp_path / "data" / "open_positions.json"),
            "account_file": str(tmp_path / "data" / "account_state.json"),
        },
        "metrics": {"enabled": False},
        "health": {"enabled": False},
        "alerts": {"enabled": False},
        "logging": {"file": str(tmp_path / "logs" / "exit-engine.log")},
    })


def test_run_once_exits_and_persists(engine_config):
    prices = ScriptedPriceSource({"TokenMint111": 70.0})
    sink = DryRunOrderSink(slippage_bps=100)
    runner = ExitEngineRunner(engine_config, price_source=prices, order_sink=sink)
    position = runner.monitor.add_position(make_position(entry_price=100.0, quantity=10, cost=1000))

    runner.run_once()

    assert len(sink.fills) == 1
    assert runner.store.get(position.id) is None
    closed = runner.events.drain(EventKind.POSITION_CLOSED)
    assert closed[0].payload["proceeds"] == 693
    assert closed[0].payload["pnl"] == -307

    restarted = ExitEngineRunner(engine_config, price_source=prices, order_sink=sink)
    assert len(restarted.store) == 0
    assert restarted.guard.get_metrics()["current_balance"] == 10_000_000_000 - 307


def test_restart_resumes_open_positions(engine_config):
    prices = ScriptedPriceSource({"TokenMint111": 104.0})
    runner = ExitEngineRunner(engine_config, price_source=prices, order_sink=DryRunOrderSink())
    position = runner.monitor.add_position(make_position(entry_timestamp=utcnow()))
    runner.run_once()

    restarted = ExitEngineRunner(engine_config, price_source=prices, order_sink=DryRunOrderSink())

    resumed = restarted.store.get(position.id)
    assert resumed == position
    assert resumed.current_price == 104.0
    assert restarted.guard.get_metrics()["active_positions"] == 1


def test_run_forever_returns_after_shutdown_request(engine_config):
    runner = ExitEngineRunner(engine_config, price_source=ScriptedPriceSource(), order_sink=DryRunOrderSink())
    runner.request_shutdown()

    runner.run_forever()

    assert not runner.monitor.is_running()
