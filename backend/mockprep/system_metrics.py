import threading
import time
from typing import Any


_lock = threading.Lock()
_metrics: dict[str, float] = {
    "sessions_live": 0.0,
    "sessions_started_total": 0.0,
    "sessions_completed_total": 0.0,
    "sessions_abandoned_total": 0.0,
    "sessions_suspended_total": 0.0,
    "sessions_time_expired_total": 0.0,
    "debits_total": 0.0,
    "debits_insufficient_total": 0.0,
    "debits_refunded_total": 0.0,
    "debit_persistence_failures_total": 0.0,
    "purchase_prompts_total": 0.0,
    "completion_persist_attempts_total": 0.0,
    "completion_persist_failures_total": 0.0,
    "contract_violations_total": 0.0,
    "transcript_chunks_dropped_total": 0.0,
    "completion_latency_total_ms": 0.0,
    "completion_latency_samples": 0.0,
}


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def set_metric(name: str, value: float) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = max(0.0, float(value))


def observe_completion_latency_ms(value_ms: float) -> None:
    latency = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["completion_latency_total_ms"] = float(_metrics.get("completion_latency_total_ms", 0.0)) + latency
        _metrics["completion_latency_samples"] = float(_metrics.get("completion_latency_samples", 0.0)) + 1.0


def get_metric(name: str) -> float:
    with _lock:
        return float(_metrics.get(str(name or "").strip(), 0.0))


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    latency_samples = max(1.0, float(data.get("completion_latency_samples") or 0.0))

    payload: dict[str, Any] = {
        "generated_at": time.time(),
        "avg_completion_latency_ms": round(float(data.get("completion_latency_total_ms") or 0.0) / latency_samples, 2),
    }
    for key, value in data.items():
        if key.endswith("_ms"):
            payload[key] = float(value or 0.0)
        else:
            payload[key] = int(value or 0.0)

    if extra:
        payload.update(extra)
    return payload
