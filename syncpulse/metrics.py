from __future__ import annotations

import math
import threading
from datetime import datetime

from syncpulse.models import HealthStatus

DURATION_BUCKETS = (0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, math.inf)


def _render_number(value: float) -> str:
    if math.isinf(value):
        return "+Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class SyncMetrics:
    """Process-wide observability signals for the sync scheduler.

    Health starts out Healthy and follows the most recent sync attempt. The
    values are read by the admin surface (``/api/health``, ``/metrics``) and
    never by the scheduler's decision logic, except for the health value the
    orchestrator consults when it persists the status record.
    """

    def __init__(self, buckets: tuple[float, ...] = DURATION_BUCKETS) -> None:
        self._lock = threading.Lock()
        self._buckets = tuple(sorted(buckets))
        if not self._buckets or not math.isinf(self._buckets[-1]):
            self._buckets = self._buckets + (math.inf,)
        self._bucket_counts = [0] * len(self._buckets)
        self._duration_sum = 0.0
        self._duration_count = 0
        self._health = HealthStatus.HEALTHY
        self._next_sync_time = 0.0

    @property
    def health(self) -> HealthStatus:
        with self._lock:
            return self._health

    def set_health(self, status: HealthStatus) -> None:
        with self._lock:
            self._health = status

    @property
    def next_sync_time(self) -> float:
        with self._lock:
            return self._next_sync_time

    def set_next_sync_time(self, value: datetime) -> None:
        with self._lock:
            self._next_sync_time = float(int(value.timestamp()))

    def observe_duration(self, seconds: float) -> None:
        seconds = max(0.0, float(seconds))
        with self._lock:
            self._duration_sum += seconds
            self._duration_count += 1
            for index, bound in enumerate(self._buckets):
                if seconds <= bound:
                    self._bucket_counts[index] += 1

    @property
    def duration_count(self) -> int:
        with self._lock:
            return self._duration_count

    def render_prometheus(self) -> str:
        with self._lock:
            buckets = list(zip(self._buckets, self._bucket_counts))
            duration_sum = self._duration_sum
            duration_count = self._duration_count
            health = self._health
            next_sync_time = self._next_sync_time

        lines: list[str] = []
        lines.append("# HELP syncpulse_sync_duration_seconds The histogram of sync jobs that have run.")
        lines.append("# TYPE syncpulse_sync_duration_seconds histogram")
        for bound, count in buckets:
            lines.append(f'syncpulse_sync_duration_seconds_bucket{{le="{_render_number(bound)}"}} {count}')
        lines.append(f"syncpulse_sync_duration_seconds_sum {_render_number(duration_sum)}")
        lines.append(f"syncpulse_sync_duration_seconds_count {duration_count}")
        lines.append("# HELP syncpulse_sync_service_health Health status for the sync service.")
        lines.append("# TYPE syncpulse_sync_service_health gauge")
        lines.append(f"syncpulse_sync_service_health {health.value}")
        lines.append("# HELP syncpulse_next_sync_time The next time the sync will run in seconds since epoch.")
        lines.append("# TYPE syncpulse_next_sync_time gauge")
        lines.append(f"syncpulse_next_sync_time {_render_number(next_sync_time)}")
        return "\n".join(lines) + "\n"
