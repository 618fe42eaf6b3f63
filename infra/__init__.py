"""Infrastructure modules for pulse-trader"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .state_store import JsonStateStore, create_state_store_from_config  # noqa: F401
from .settings import SettingsProvider, TradingSettings  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"CycleStats",
	"HealthServer",
	"JsonStateStore",
	"create_state_store_from_config",
	"SettingsProvider",
	"TradingSettings",
]
