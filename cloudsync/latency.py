from __future__ import annotations
from typing import Any, Callable, Optional
from datetime import datetime, timezone, timedelta
from cloudsync.errors import LatencyError

PROPAGATION_METRIC = "cloudsync_propagation_latency_seconds"

def _now_utc() -> datetime:
    return datetime.now(timezone.utc)

def commit_time_from_ms(ts_ms: Any) -> datetime:
    # bool is an int subclass; a true/false ts_ms is not a timestamp
    if isinstance(ts_ms, bool) or not isinstance(ts_ms, (int, float)):
        raise LatencyError(f"ts_ms is not numeric: {ts_ms!r}")
    try:
        return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise LatencyError(f"ts_ms out of range: {ts_ms!r}") from e

class LatencyObserver:
    def __init__(self, metrics, now: Optional[Callable[[], datetime]] = None):
        self.metrics = metrics
        self._now = now or _now_utc

    def observe(self, source_commit_time: datetime) -> timedelta:
        if source_commit_time.tzinfo is None:
            source_commit_time = source_commit_time.replace(tzinfo=timezone.utc)
        # negative values mean clock skew between source and consumer; keep them
        delay = self._now() - source_commit_time
        self.metrics.observe(PROPAGATION_METRIC, delay.total_seconds())
        return delay

    def observe_ms(self, ts_ms: Any) -> timedelta:
        return self.observe(commit_time_from_ms(ts_ms))
