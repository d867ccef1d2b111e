"""Infrastructure modules for gridtrader"""

from .alerting import NotificationService, NotificationType  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .rate_limiter import SlidingWindowRateLimiter  # noqa: F401
from .state_store import LedgerStore, ReadSet, WriteSet  # noqa: F401

__all__ = [
	"NotificationService",
	"NotificationType",
	"MetricsRecorder",
	"SlidingWindowRateLimiter",
	"LedgerStore",
	"ReadSet",
	"WriteSet",
]
