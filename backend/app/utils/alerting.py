import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "ANALYSIS_BATCH_FAILED": 3,
    "ANALYSIS_JOB_FAILED": 1,
    "AI_FEEDBACK_PLACEHOLDERS_CREATED": 10,
}


class AuditAlertTracker:
    """Counts audit actions in a sliding window and logs an ALERT at each multiple of the threshold."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, metadata: Optional[dict] = None) -> bool:
        """Record *action*; returns True when this record raised an alert."""
        if action not in self._thresholds:
            return False
        limit = self._thresholds[action]
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault(action, deque())
            cutoff = now - self._window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            if len(bucket) % limit != 0:
                return False
            logger.warning(
                "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
                action,
                len(bucket),
                self._window_seconds,
                metadata or {},
            )
            return True

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
