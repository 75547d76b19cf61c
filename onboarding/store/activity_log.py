"""
Append-only activity trail. One Redis list per record, one JSON entry per
workflow step attempt; entries are never rewritten or removed.
"""
import json
import time
from dataclasses import asdict, replace
from typing import List

from redis.exceptions import RedisError

from onboarding.observability.logging import log
from onboarding.settings import settings
from onboarding.store.models import ActivityRecord
from onboarding.store.redis_conn import get_redis

PREFIX = "onboarding:activity:"
SEQ_PREFIX = "onboarding:activity:seq:"


def _key(record_id: str) -> str:
    return f"{PREFIX}{record_id}"


def append_activity(entry: ActivityRecord) -> ActivityRecord:
    """
    Append an entry, assigning the next per-record sequence number.
    Redis failures are retried; the state transition this entry describes
    is already persisted, so it must not stay unlogged.
    """
    attempts = max(1, int(settings.ACTIVITY_APPEND_ATTEMPTS or 1))
    backoff_s = max(0, int(settings.ACTIVITY_APPEND_BACKOFF_MS or 0)) / 1000.0
    last_err = None

    for attempt in range(1, attempts + 1):
        try:
            r = get_redis()
            seq = int(r.incr(f"{SEQ_PREFIX}{entry.recordId}"))
            stored = replace(entry, sequence=seq)
            r.rpush(_key(entry.recordId), json.dumps(asdict(stored)))
            return stored
        except RedisError as e:
            last_err = e
            log(
                event="activity_append_retry",
                recordId=entry.recordId,
                action=entry.action,
                attempt=attempt,
                error=str(e)[:200],
            )
            if attempt < attempts and backoff_s:
                time.sleep(backoff_s * attempt)

    log(
        event="activity_append_failed",
        recordId=entry.recordId,
        action=entry.action,
        transactionId=entry.transactionId,
        attempts=attempts,
    )
    raise last_err


def list_activity(record_id: str) -> List[ActivityRecord]:
    r = get_redis()
    raw = r.lrange(_key(record_id), 0, -1) or []
    return [ActivityRecord(**json.loads(x)) for x in raw]
