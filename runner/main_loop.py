"""
Exit Engine Runner: Main Loop

Wires the exit engine together and keeps it running until signaled.

Flow:
1. Validate and load config/policy.yaml
2. Hydrate account state and open positions from data/
3. Start PositionMonitor (price refresh + analysis cycles)
4. Serve /health and Prometheus metrics
5. On SIGINT/SIGTERM: stop cycles, persist state, exit
"""

import signal
import threading
from typing import Optional
from pathlib import Path
import logging

from core.events import EventChannel
from core.exit_rules import ExitRuleEngine
from core.position_monitor import PositionMonitor
from core.position_store import PositionStore
from core.risk import AccountRiskGuard
from infra.alerting import AlertService
from infra.dry_run import DryRunOrderSink
from infra.healthcheck import HealthServer
from infra.metrics import MetricsRecorder
from infra.price_feed import HttpPriceSource
from infra.state_store import PositionStateStore
from tools.config_validator import EngineConfig, load_engine_config

logger = logging.getLogger(__name__)


def configure_logging(config: EngineConfig) -> None:
    log_path = Path(config.logging.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


class ExitEngineRunner:
    """
    Process entry point.

    Responsibilities:
    - Build every component from one validated EngineConfig
    - Resume persisted positions and account state
    - Run until a shutdown signal, then persist and stop cleanly
    """

    def __init__(self, config: EngineConfig, price_source=None, order_sink=None):
        self.config = config
        self.events = EventChannel()
        self.alert_service = AlertService.from_config(config.alerts)
        self.metrics = MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)

        self.state_store: Optional[PositionStateStore] = None
        initial_account = None
        persisted_positions = []
        if config.persistence.enabled:
            self.state_store = PositionStateStore.from_config(config.persistence)
            initial_account = self.state_store.load_account()
            persisted_positions = self.state_store.load_positions()

        self.guard = AccountRiskGuard(
            config.risk,
            alert_service=self.alert_service,
            events=self.events,
            metrics=self.metrics,
            initial_state=initial_account,
        )
        self.engine = ExitRuleEngine(config.exits, config.exits.patterns)
        self.store = PositionStore(history_size=config.exits.max_lookback())
        self.monitor = PositionMonitor(
            store=self.store,
            engine=self.engine,
            guard=self.guard,
            price_source=price_source or HttpPriceSource.from_config(config.price_feed),
            order_sink=order_sink or DryRunOrderSink.from_config(config.execution),
            config=config.monitor,
            alert_service=self.alert_service,
            events=self.events,
            state_store=self.state_store,
            metrics=self.metrics,
        )
        if persisted_positions:
            self.monitor.restore_positions(persisted_positions)

        self.health_server: Optional[HealthServer] = None
        if config.health.enabled:
            self.health_server = HealthServer(
                config.health.port,
                status_provider=self.monitor.get_status,
                metrics_provider=self.guard.get_metrics,
            )

        self._shutdown = threading.Event()
        logger.info(
            f"Initialized exit engine: {len(self.store)} open positions, mode={config.execution.mode}"
        )

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping position monitor")
        logger.warning("=" * 80)
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def run_once(self) -> None:
        """One refresh + analysis pass, waiting for any exits it dispatches."""
        self.monitor.run_price_refresh()
        self.monitor.run_analysis(wait_for_exits=True)
        self.monitor.persist()

    def run_forever(self) -> None:
        self.metrics.start()
        if self.health_server:
            self.health_server.start()
        if self.state_store:
            self.state_store.create_backup()
        self.monitor.start()
        try:
            while not self._shutdown.wait(1.0):
                pass
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.monitor.stop()
        try:
            self.monitor.persist()
        except OSError as e:
            logger.error(f"Failed to persist state during shutdown: {e}")
        if self.health_server:
            self.health_server.stop()
        logger.info("Exit engine stopped cleanly.")

    def request_shutdown(self) -> None:
        self._shutdown.set()


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Position risk & exit engine")
    parser.add_argument("--once", action="store_true", help="Run one refresh + analysis pass and exit")
    parser.add_argument("--config", default=None, help="Policy file (default: $POLICY_FILE or config/policy.yaml)")

    args = parser.parse_args()

    config = load_engine_config(args.config)
    configure_logging(config)

    runner = ExitEngineRunner(config)
    if args.once:
        runner.run_once()
        return
    runner.install_signal_handlers()
    runner.run_forever()


if __name__ == "__main__":
    main()
