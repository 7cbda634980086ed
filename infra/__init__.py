"""Infrastructure modules for snipewatch"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, RunStats  # noqa: F401
from .profile_lock import LockHolder, LockRecord, StaleLockGuard  # noqa: F401
from .profile_store import ProfileStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"RunStats",
	"LockHolder",
	"LockRecord",
	"StaleLockGuard",
	"ProfileStore",
]
