from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_job_completed(job_type: str) -> None:
    _inc("pipeline_jobs_completed")
    _inc(f"pipeline_jobs_completed.{job_type}")


def record_job_failed(job_type: str) -> None:
    _inc("pipeline_jobs_failed")
    _inc(f"pipeline_jobs_failed.{job_type}")


def record_job_dead_lettered(job_type: str) -> None:
    _inc("pipeline_jobs_dead_lettered")
    _inc(f"pipeline_jobs_dead_lettered.{job_type}")


def record_job_deferred() -> None:
    _inc("pipeline_jobs_deferred")


def record_incident_opened() -> None:
    _inc("incidents_opened")


def record_incident_auto_resolved() -> None:
    _inc("incidents_auto_resolved")


def record_ticket_created() -> None:
    _inc("tickets_created")


def record_assets_reconciled(count: int) -> None:
    if count > 0:
        _inc("assets_reconciled", count)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
