"""
Gateway Metrics Snapshot
------------------------
Lightweight Redis counters/timers for CM gateway calls and workflow outcomes,
plus a single snapshot function consumed by /admin/metrics. Recording is
best-effort: a Redis hiccup here must never change the outcome of a CM call.
"""
from __future__ import annotations
import time
from typing import Dict, List, Tuple

from redis.exceptions import RedisError

from onboarding.observability.logging import log
from onboarding.store.redis_conn import get_redis

K_GW_CALLS = "metrics:gateway:calls"            # HINCRBY "<op>:<result>"
K_GW_LAT = "metrics:gateway:latencies"          # LPUSH ms
K_STEP_OUTCOMES = "metrics:steps:outcomes"      # HINCRBY "<action>:<outcome>"
K_STEP_FAIL_RECENT = "metrics:steps:failed_recent"  # LPUSH recordId

_MAX_SAMPLES = 500

def _percentile(data: List[float], p: float) -> float:
    """Deterministic percentile (nearest-rank on sorted data)."""
    if not data:
        return 0.0
    d = sorted(data)
    k = max(1, int(round(p * len(d))))
    return float(d[k - 1])

def record_gateway_call(op: str, result: str, ms: int) -> None:
    try:
        r = get_redis()
        r.hincrby(K_GW_CALLS, f"{op or 'unknown'}:{result}", 1)
        r.lpush(K_GW_LAT, int(ms))
        r.ltrim(K_GW_LAT, 0, _MAX_SAMPLES - 1)
    except RedisError as e:
        log(event="metrics_write_failed", key=K_GW_CALLS, error=str(e)[:200])

def record_step_outcome(action: str, outcome: str, record_id: str = "") -> None:
    try:
        r = get_redis()
        r.hincrby(K_STEP_OUTCOMES, f"{action}:{outcome}", 1)
        if outcome in ("BUSINESS_FAILURE", "TRANSIENT_FAILURE", "REJECTED", "RESULT_NOT_PERSISTED") and record_id:
            r.lpush(K_STEP_FAIL_RECENT, record_id)
            r.ltrim(K_STEP_FAIL_RECENT, 0, 49)  # keep last 50
    except RedisError as e:
        log(event="metrics_write_failed", key=K_STEP_OUTCOMES, error=str(e)[:200])

def _read_latencies_s() -> List[float]:
    r = get_redis()
    out: List[float] = []
    for x in r.lrange(K_GW_LAT, 0, _MAX_SAMPLES - 1) or []:
        try:
            out.append(float(x) / 1000.0)
        except (TypeError, ValueError):
            continue
    return out

def _p50_p95(latencies_s: List[float]) -> Tuple[float, float]:
    if not latencies_s:
        return 0.0, 0.0
    return _percentile(latencies_s, 0.50), _percentile(latencies_s, 0.95)

def _int_hash(key: str) -> Dict[str, int]:
    r = get_redis()
    return {str(k): int(v) for k, v in (r.hgetall(key) or {}).items()}

def get_gateway_snapshot() -> dict:
    """
    Shape for /admin/metrics:
      - gateway_calls: {"create:answered": n, "create:timeout": n, ...}
      - gateway_availability: answered / total calls, percent
      - p50/p95 gateway latency (seconds)
      - step_outcomes: {"approve:SUCCESS": n, ...}
      - recent_failed_records
    """
    calls = _int_hash(K_GW_CALLS)
    total = sum(calls.values())
    answered = sum(v for k, v in calls.items() if k.endswith(":answered"))
    p50, p95 = _p50_p95(_read_latencies_s())
    r = get_redis()
    return {
        "gateway_calls": calls,
        "gateway_availability": round((answered / total) * 100.0, 3) if total else 100.0,
        "p50_gateway_latency": round(p50, 3),
        "p95_gateway_latency": round(p95, 3),
        "step_outcomes": _int_hash(K_STEP_OUTCOMES),
        "recent_failed_records": [str(x) for x in (r.lrange(K_STEP_FAIL_RECENT, 0, 19) or [])],
        "snapshot_at": int(time.time()),
    }
