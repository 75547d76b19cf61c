import json
import inspect
from dataclasses import asdict
from typing import Any, Dict, Iterable

from redis.exceptions import WatchError

from onboarding.core.errors import RecordNotFound, StageConflict
from onboarding.observability.logging import log
from onboarding.store.models import OnboardingRecord
from onboarding.store.redis_conn import get_redis

PREFIX = "onboarding:record:"

# Never writable through a partial update
IMMUTABLE_FIELDS = frozenset({"id", "entityKind", "typeDiscriminator", "createdAt", "createdBy"})


def _key(record_id: str) -> str:
    return f"{PREFIX}{record_id}"


def _filter_record_kwargs(data: dict) -> dict:
    """
    Drop unknown fields so OnboardingRecord(**kwargs) never explodes on
    documents written by an older or newer build.
    """
    sig = inspect.signature(OnboardingRecord)
    allowed = set(sig.parameters.keys())
    return {k: v for k, v in data.items() if k in allowed}


def _to_record(raw: str) -> OnboardingRecord:
    return OnboardingRecord(**_filter_record_kwargs(json.loads(raw)))


def insert_record(record: OnboardingRecord) -> None:
    """Insert a new record; a second insert for the same id is a duplicate submission."""
    r = get_redis()
    created = r.set(_key(record.id), json.dumps(asdict(record)), nx=True)
    if not created:
        raise StageConflict(
            f"Onboarding record {record.id} already exists",
            record_id=record.id,
        )


def load_record(record_id: str) -> OnboardingRecord:
    r = get_redis()
    raw = r.get(_key(record_id))
    if not raw:
        raise RecordNotFound(record_id)
    return _to_record(raw)


def update_partial(
    record_id: str,
    expected_stage: str,
    changes: Dict[str, Any],
    allowed_fields: Iterable[str],
) -> OnboardingRecord:
    """
    Field-allowlisted partial update with optimistic concurrency.

    The write only goes through when the stored stage still equals
    expected_stage and nobody touched the document between read and write;
    otherwise StageConflict is raised and nothing is written.
    """
    allowed = frozenset(allowed_fields) - IMMUTABLE_FIELDS
    illegal = sorted(k for k in changes if k not in allowed)
    if illegal:
        raise ValueError(f"Fields not writable by this update: {illegal}")

    r = get_redis()
    key = _key(record_id)
    with r.pipeline() as pipe:
        try:
            pipe.watch(key)
            raw = pipe.get(key)
            if not raw:
                raise RecordNotFound(record_id)
            data = json.loads(raw)
            current_stage = data.get("stage", "")
            if current_stage != expected_stage:
                raise StageConflict(
                    f"Record {record_id} moved to {current_stage} (expected {expected_stage})",
                    record_id=record_id,
                    stage=current_stage,
                )
            data.update(changes)
            pipe.multi()
            pipe.set(key, json.dumps(data))
            pipe.execute()
        except WatchError:
            log(event="record_update_conflict", recordId=record_id, expectedStage=expected_stage)
            raise StageConflict(
                f"Record {record_id} was modified concurrently",
                record_id=record_id,
                stage=expected_stage,
            )

    return OnboardingRecord(**_filter_record_kwargs(data))
