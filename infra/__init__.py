"""Infrastructure modules for the position exit engine"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .state_store import PositionStateStore  # noqa: F401
from .price_feed import HttpPriceSource  # noqa: F401
from .dry_run import DryRunOrderSink  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"HealthServer",
	"PositionStateStore",
	"HttpPriceSource",
	"DryRunOrderSink",
]
