"""Infrastructure modules for hedgekeeper"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .distributed_lock import DistributedLock  # noqa: F401
from .kv_store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"DistributedLock",
	"InMemoryKeyValueStore",
	"KeyValueStore",
	"RedisKeyValueStore",
	"MetricsRecorder",
	"CycleStats",
	"StateStore",
]
