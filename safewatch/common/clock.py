"""
Clock abstraction for SafeWatch.

All engine components read time through an injected callable so that
timers and deadlines can be driven deterministically in tests.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """현재 UTC 시각 (timezone-aware)"""
    return datetime.now(timezone.utc)
