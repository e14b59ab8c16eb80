"""Run metrics collection.

Provides phase timing and counters for one merge run.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

__all__ = ["MetricPoint", "PhaseTimer", "RunMetrics"]


@dataclass
class MetricPoint:
    """A single metric data point."""

    name: str
    value: Any
    timestamp: datetime
    unit: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.unit:
            result["unit"] = self.unit
        if self.tags:
            result["tags"] = self.tags
        return result


@dataclass
class PhaseTimer:
    """Timer for tracking duration of a run phase."""

    name: str
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None

    def stop(self) -> float:
        self.end_time = time.perf_counter()
        return self.duration

    @property
    def duration(self) -> float:
        end = self.end_time or time.perf_counter()
        return end - self.start_time

    @property
    def running(self) -> bool:
        return self.end_time is None


class RunMetrics:
    """Metrics for a single merge run.

    Example:
        metrics = RunMetrics(target="movielens.tags", run_id=run_id)

        with metrics.time_phase("classify"):
            diff = diff_snapshot(keyed, prior)
        metrics.record("rows_changed", len(diff.changed), unit="rows")

        summary = metrics.summary()
    """

    def __init__(self, target: str, run_id: str):
        self.target = target
        self.run_id = run_id

        self._start_time = time.perf_counter()
        self._end_time: Optional[float] = None
        self._phases: List[PhaseTimer] = []
        self._metrics: List[MetricPoint] = []

    @contextmanager
    def time_phase(self, name: str) -> Generator[PhaseTimer, None, None]:
        """Context manager to time a run phase.

        Args:
            name: Phase name (e.g., "key", "classify", "history", "upsert")
        """
        timer = PhaseTimer(name=name)
        self._phases.append(timer)
        try:
            yield timer
        finally:
            timer.stop()

    def record(self, name: str, value: Any, unit: Optional[str] = None, **tags: str) -> None:
        all_tags = {"target": self.target, "run_id": self.run_id}
        all_tags.update(tags)
        self._metrics.append(
            MetricPoint(
                name=name,
                value=value,
                timestamp=datetime.now(timezone.utc),
                unit=unit,
                tags=all_tags,
            )
        )

    def finish(self) -> None:
        if self._end_time is None:
            self._end_time = time.perf_counter()

    @property
    def total_duration(self) -> float:
        end = self._end_time or time.perf_counter()
        return end - self._start_time

    @property
    def phase_durations(self) -> Dict[str, float]:
        return {p.name: round(p.duration, 3) for p in self._phases}

    def get(self, name: str) -> Optional[Any]:
        """Latest recorded value for a metric name."""
        for point in reversed(self._metrics):
            if point.name == name:
                return point.value
        return None

    def summary(self) -> Dict[str, Any]:
        self.finish()
        return {
            "target": self.target,
            "run_id": self.run_id,
            "timing": {
                "total_seconds": round(self.total_duration, 3),
                "phases": self.phase_durations,
            },
            "metrics": [m.to_dict() for m in self._metrics],
        }

    def to_log_dict(self) -> Dict[str, Any]:
        """Flat dictionary suitable for structured logging."""
        result: Dict[str, Any] = {
            "target": self.target,
            "run_id": self.run_id,
            "total_duration_seconds": round(self.total_duration, 3),
        }
        for phase in self._phases:
            result[f"phase_{phase.name}_seconds"] = round(phase.duration, 3)
        for metric in self._metrics:
            key = f"metric_{metric.name}"
            if metric.unit:
                key = f"{key}_{metric.unit}"
            result[key] = metric.value
        return result
