from contextlib import contextmanager
import time
import uuid
from onboarding.core.errors import StageConflict
from onboarding.settings import settings
from onboarding.store.redis_conn import get_redis

# connect, write, read and pool each get the full CM timeout
_CM_TIMEOUT_PHASES = 4
_TTL_MARGIN_MS = 5000


def min_lock_ttl_ms() -> int:
    """Longest a single CM call can take under the configured timeout, plus margin."""
    return int(float(settings.CM_TIMEOUT_SEC) * _CM_TIMEOUT_PHASES * 1000) + _TTL_MARGIN_MS


_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

@contextmanager
def record_lock(record_id: str, ttl_ms: int = 0, spins: int = 5):
    """
    Advisory lock: at most one in-flight workflow step per record id.
    A held lock surfaces as StageConflict so callers can re-fetch and retry.
    """
    r = get_redis()
    key = f"lock:record:{record_id}"
    token = uuid.uuid4().hex
    ttl = max(int(ttl_ms or settings.RECORD_LOCK_TTL_MS), min_lock_ttl_ms())
    acquired = bool(r.set(key, token, px=ttl, nx=True))

    try:
        if not acquired:
            for _ in range(spins):
                time.sleep(0.1)
                if r.set(key, token, px=ttl, nx=True):
                    acquired = True
                    break

            if not acquired:
                raise StageConflict(
                    f"Another workflow step is in flight for record {record_id}",
                    record_id=record_id,
                )

        yield
    finally:
        if acquired:
            # Release only if we own it
            r.eval(_RELEASE_SCRIPT, 1, key, token)
