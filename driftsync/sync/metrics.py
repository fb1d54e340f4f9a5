"""In-process sync metrics.

Keeps the most recent pass outcomes plus running counters for conflicts,
resolutions, transfer volume and permanently failed queue operations.
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import ResolutionStrategy, SyncResult, SyncResultStatus
from .operation_queue import OperationFailure

logger = logging.getLogger(__name__)

MAX_SAMPLES = 1000


@dataclass(frozen=True)
class SyncSample:
    """Outcome of one sync, backup or restore run."""

    kind: str
    status: SyncResultStatus
    duration: float
    record_count: int
    timestamp: datetime = field(default_factory=datetime.now)


class SyncMetrics:
    """Collects sync durations, outcomes, conflicts and failures."""

    def __init__(self, max_samples: int = MAX_SAMPLES):
        self._samples: deque[SyncSample] = deque(maxlen=max_samples)
        self.started_at = datetime.now()
        self.records_pulled = 0
        self.records_pushed = 0
        self.conflicts_detected = 0
        self.resolutions: Counter[str] = Counter()
        self.operation_failures = 0
        self.last_error: str | None = None

    @property
    def samples(self) -> list[SyncSample]:
        return list(self._samples)

    def record_result(self, result: SyncResult, kind: str = "sync") -> None:
        """Record the outcome of a sync, backup or restore run."""
        self._samples.append(
            SyncSample(
                kind=kind,
                status=result.status,
                duration=result.duration,
                record_count=result.total_synced,
                timestamp=result.timestamp,
            )
        )
        if result.status == SyncResultStatus.FAILURE:
            self.last_error = result.error_message

    def record_transfer(self, pulled: int, pushed: int) -> None:
        self.records_pulled += pulled
        self.records_pushed += pushed

    def record_conflicts(self, count: int) -> None:
        self.conflicts_detected += count

    def record_resolution(self, strategy: ResolutionStrategy) -> None:
        self.resolutions[strategy.value] += 1

    def record_operation_failure(self, failure: OperationFailure) -> None:
        """Subscriber for the operation queue's failure channel."""
        self.operation_failures += 1
        self.last_error = failure.error
        logger.debug(f"Recorded permanent failure of {failure.operation.id}")

    def summary(self, kind: str = "sync") -> dict[str, Any]:
        """Aggregate the retained samples of one kind.

        Deferred runs are counted separately and left out of the error rate
        and average duration.
        """
        samples = [s for s in self._samples if s.kind == kind]
        completed = [s for s in samples if s.status != SyncResultStatus.DEFERRED]
        successful = sum(
            1
            for s in completed
            if s.status in (SyncResultStatus.SUCCESS, SyncResultStatus.PARTIAL)
        )
        failed = sum(1 for s in completed if s.status == SyncResultStatus.FAILURE)
        total = len(completed)

        return {
            "kind": kind,
            "total": total,
            "successful": successful,
            "failed": failed,
            "deferred": len(samples) - total,
            "average_duration": round(sum(s.duration for s in completed) / total, 3)
            if total
            else 0.0,
            "records_synced": sum(s.record_count for s in completed),
            "error_rate": round(failed / total, 3) if total else 0.0,
            "records_pulled": self.records_pulled,
            "records_pushed": self.records_pushed,
            "conflicts_detected": self.conflicts_detected,
            "conflicts_resolved": sum(self.resolutions.values()),
            "resolutions_by_strategy": dict(self.resolutions),
            "operation_failures": self.operation_failures,
            "last_error": self.last_error,
            "period_start": self.started_at.isoformat(),
            "period_end": datetime.now().isoformat(),
        }
