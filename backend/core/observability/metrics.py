"""In-process metrics counters and histograms."""

import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels.items()) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    # Simple buckets for basic histogram visualization
    if value < 0.1:
        metrics["buckets"]["<0.1"] += 1
    elif value < 1:
        metrics["buckets"]["0.1-1.0"] += 1
    elif value < 10:
        metrics["buckets"]["1.0-10.0"] += 1
    elif value < 100:
        metrics["buckets"]["10.0-100.0"] += 1
    elif value < 1000:
        metrics["buckets"]["100.0-1000.0"] += 1
    else:
        metrics["buckets"][">=1000.0"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    for key, data in _metrics.items():
        metric_result = {"count": data["count"], "sum": data["sum"]}

        if data["values"]:
            values = data["values"]
            metric_result.update(
                {
                    "min": min(values),
                    "max": max(values),
                    "avg": data["sum"] / len(values),
                    "buckets": dict(data["buckets"]),
                }
            )

        result[key] = metric_result

    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    _metrics.clear()


# Notification job metrics
def increment_jobs_created() -> None:
    increment_counter("jobs_created_total")


def increment_job_duplicates() -> None:
    """Increment counter for upserts resolved as duplicates."""
    increment_counter("job_duplicates_total")


def increment_job_rejections(path: str) -> None:
    increment_counter("job_rejections_total", labels={"path": path})


# Reminder dispatch metrics
def increment_reminders_sent(channel: str) -> None:
    increment_counter("reminders_sent_total", labels={"channel": channel})


def increment_reminders_skipped(reason: str) -> None:
    increment_counter("reminders_skipped_total", labels={"reason": reason})


def increment_provider_failures(channel: str) -> None:
    increment_counter("provider_failures_total", labels={"channel": channel})


# License metrics
def increment_licenses_renewed(n: float = 1.0) -> None:
    increment_counter("licenses_renewed_total", value=n)


def record_overdue_scan(count: int) -> None:
    """Record the size of an overdue scan result."""
    record_histogram("overdue_scan_items", float(count))


# Access guard metrics
def increment_auth_failures(reason: str) -> None:
    increment_counter("auth_failures_total", labels={"reason": reason})


def record_request_duration(duration_ms: float, route: str) -> None:
    record_histogram("request_duration_ms", duration_ms, labels={"route": route})
