import re
import time
import uuid
from dataclasses import fields as dc_fields
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from onboarding.core import state_machine as sm
from onboarding.core.error_classifier import default_classifier
from onboarding.core.errors import (
    ExternalBusinessError,
    ExternalConnectivityError,
    StageConflict,
    TranslationMiss,
    ValidationError,
)
from onboarding.gateway import cm_client
from onboarding.gateway.payloads import (
    build_addresses,
    build_contact_media,
    build_create_request,
    build_update_request,
)
from onboarding.mapping.translation_table import current_table
from onboarding.observability.logging import log
from onboarding.queue.jobs import enqueue_local_user_creation
from onboarding.settings import settings
from onboarding.store.activity_log import append_activity
from onboarding.store.models import (
    ENTITY_KINDS,
    ActivityRecord,
    OnboardingRecord,
    RequestContext,
    StepResult,
)
from onboarding.store.record_repo import insert_record, update_partial
from onboarding.utils.time import elapsed_ms, now_ms
import onboarding.observability.metrics as metrics

# Actions (as written to the activity log)
ACTION_SUBMIT = "SUBMIT"
ACTION_KYC = "RELEASE_TO_KYC"
ACTION_APPROVE = "APPROVE"
ACTION_UPDATE = "UPDATE"
ACTION_RETRY = "RETRY"
ACTION_REQUEUE = "REQUEUE"
ACTION_SYNC = "SYNC"

# Step outcomes
OUTCOME_SUCCESS = "SUCCESS"
OUTCOME_IN_PROGRESS = "IN_PROGRESS"
OUTCOME_BUSINESS_FAILURE = "BUSINESS_FAILURE"
OUTCOME_TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
OUTCOME_REJECTED = "REJECTED"
OUTCOME_NOT_IN_CM = "NOT_IN_CM"
# CM answered but the transition could not be written back
OUTCOME_RESULT_NOT_PERSISTED = "RESULT_NOT_PERSISTED"

MANDATORY_FIELDS = ("name", "entityKind", "typeDiscriminator", "idNumber")

EDITABLE_FIELDS = frozenset({
    "name", "idType", "idNumber", "taxNumber",
    "mobile", "phone", "fax", "email",
    "country", "city", "street", "postalCode", "locality",
    "category", "division", "salesOrg",
})
DERIVED_FIELDS = frozenset({"contactMedia", "addresses"})

CM_UPDATE_ACCEPTED = "Update accepted by CM"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _clean(v: Any) -> str:
    return str(v or "").strip()


def validate_mandatory(record: OnboardingRecord) -> None:
    missing = [f for f in MANDATORY_FIELDS if not _clean(getattr(record, f, ""))]
    # Non-parent records need a category to build the CM relatedParty block
    if not record.is_parent and not _clean(record.category):
        missing.append("category")
    if missing:
        raise ValidationError(f"Missing mandatory fields: {', '.join(missing)}", missing)
    if record.entityKind not in ENTITY_KINDS:
        raise ValidationError(f"Unknown entityKind {record.entityKind!r}", ["entityKind"])
    if _clean(record.email) and not _EMAIL_RE.match(_clean(record.email)):
        raise ValidationError("email is not a valid address", ["email"])


def diff_fields(before: OnboardingRecord, after: OnboardingRecord, only=EDITABLE_FIELDS) -> List[Dict[str, Any]]:
    """Field-level diff in declaration order, restricted to `only`."""
    out = []
    for f in dc_fields(OnboardingRecord):
        if f.name not in only:
            continue
        old, new = getattr(before, f.name), getattr(after, f.name)
        if old != new:
            out.append({"field": f.name, "from": old, "to": new})
    return out


def _outcome_label(outcome: sm.Outcome) -> str:
    if isinstance(outcome, sm.ExternalSuccess):
        return OUTCOME_SUCCESS if outcome.status == sm.CM_COMPLETE else OUTCOME_IN_PROGRESS
    if isinstance(outcome, sm.ExternalBusinessFailure):
        return OUTCOME_BUSINESS_FAILURE
    if isinstance(outcome, sm.ExternalConnectivityFailure):
        return OUTCOME_TRANSIENT_FAILURE
    if isinstance(outcome, sm.ExternalAbsent):
        return OUTCOME_NOT_IN_CM
    return OUTCOME_SUCCESS


def _record_activity(
    record_id: str,
    action: str,
    outcome: str,
    ctx: RequestContext,
    from_stage: str,
    to_stage: str,
    detail: Optional[Dict[str, Any]] = None,
    started: float = 0.0,
) -> ActivityRecord:
    activity = append_activity(ActivityRecord(
        recordId=record_id,
        action=action,
        outcome=outcome,
        transactionId=ctx.transactionId,
        actorId=ctx.actorId,
        timestamp=now_ms(),
        fromStage=from_stage,
        toStage=to_stage,
        detail=detail or {},
    ))
    metrics.record_step_outcome(action, outcome, record_id)
    log(
        "onboarding_step",
        recordId=record_id,
        action=action,
        outcome=outcome,
        fromStage=from_stage,
        toStage=to_stage,
        transactionId=ctx.transactionId,
        actorId=ctx.actorId,
        sequence=activity.sequence,
        latencyMs=elapsed_ms(started) if started else 0,
    )
    return activity


def _reject(record: OnboardingRecord, action: str, ctx: RequestContext, err: Exception, started: float) -> ActivityRecord:
    detail = {"errorType": type(err).__name__, "error": str(err)}
    if isinstance(err, ValidationError):
        detail["fields"] = err.fields
    return _record_activity(record.id, action, OUTCOME_REJECTED, ctx, record.stage, record.stage, detail, started)


def _call_cm(send: Callable, request: Dict[str, Any], ctx: RequestContext) -> sm.Outcome:
    """Run one CM call and fold every possible result into an outcome."""
    try:
        resp = send(request, transaction_id=ctx.transactionId)
        return sm.ExternalSuccess(status=resp.status, partyId=resp.partyId, message=resp.message)
    except ExternalBusinessError as e:
        log(event="cm_business_error", externalReference=request.get("externalReference"),
            transactionId=ctx.transactionId, code=e.code, reason=e.reason)
        return sm.ExternalBusinessFailure(code=e.code, reason=e.reason, message=e.message)
    except ExternalConnectivityError as e:
        log(event="cm_connectivity_error", externalReference=request.get("externalReference"),
            transactionId=ctx.transactionId, kind=e.kind, detail=e.detail[:200])
        return sm.ExternalConnectivityFailure(kind=e.kind, detail=e.detail)


def _signal_local_user(record: OnboardingRecord) -> None:
    try:
        queued = enqueue_local_user_creation(record.id, record.externalPartyId, record.entityKind)
        log(event="local_user_signal", recordId=record.id, externalPartyId=record.externalPartyId, queued=queued)
    except RedisError as e:
        # The transition is committed and logged; the user service can be backfilled
        log(event="local_user_enqueue_failed", recordId=record.id,
            externalPartyId=record.externalPartyId, error=str(e)[:200])


def _apply_local(record: OnboardingRecord, outcome: sm.Outcome, action: str, ctx: RequestContext,
                 started: float) -> StepResult:
    """Transition that needs no CM call (KYC release, parent completion, requeue)."""
    try:
        transition = sm.apply(record.stage, outcome)
        changes = sm.partial_update(record, transition, outcome)
        updated = update_partial(record.id, record.stage, changes, sm.TRANSITION_FIELDS)
    except StageConflict as e:
        _reject(record, action, ctx, e, started)
        raise
    activity = _record_activity(record.id, action, OUTCOME_SUCCESS, ctx, record.stage, updated.stage,
                                {"message": transition.message}, started)
    return StepResult(updated, activity, OUTCOME_SUCCESS, transition.message)


def _dispatch_to_cm(record: OnboardingRecord, action: str, ctx: RequestContext, started: float) -> StepResult:
    from_stage = record.stage
    try:
        # Build first: a TranslationMiss must abort before anything is written
        request = build_create_request(record, current_table())
        claim_outcome = sm.Dispatch(typeDiscriminator=record.typeDiscriminator)
        claim = sm.apply(from_stage, claim_outcome)
        claimed = update_partial(record.id, from_stage, sm.partial_update(record, claim, claim_outcome),
                                 sm.TRANSITION_FIELDS)
    except (StageConflict, TranslationMiss) as e:
        _reject(record, action, ctx, e, started)
        raise

    # Dispatched: from here the step always ends in a logged activity
    outcome = _call_cm(cm_client.create_onboarding, request, ctx)
    return _finish_cm_step(claimed, outcome, action, ctx, from_stage, started)


def _persist_result(record_id: str, expected_stage: str, changes: Dict[str, Any]) -> OnboardingRecord:
    """Write a CM result back, retrying Redis errors. A stage conflict is not retried."""
    attempts = max(1, int(settings.RESULT_WRITE_ATTEMPTS or 1))
    backoff_s = max(0, int(settings.RESULT_WRITE_BACKOFF_MS or 0)) / 1000.0
    last_err = None
    for attempt in range(1, attempts + 1):
        try:
            return update_partial(record_id, expected_stage, changes, sm.TRANSITION_FIELDS)
        except RedisError as e:
            last_err = e
            log(event="cm_result_write_retry", recordId=record_id, attempt=attempt, error=str(e)[:200])
            if attempt < attempts and backoff_s:
                time.sleep(backoff_s * attempt)
    raise last_err


def _record_unpersisted(claimed: OnboardingRecord, outcome: sm.Outcome, transition: sm.Transition,
                        changes: Dict[str, Any], action: str, ctx: RequestContext, from_stage: str,
                        err: Exception, started: float) -> None:
    """
    CM answered but the record could not be updated. The answer (party id
    included) goes to the activity log so `sync` or an operator can recover it.
    """
    detail = {
        "errorType": type(err).__name__,
        "error": str(err)[:200],
        "cmOutcome": _outcome_label(outcome),
        "intendedStage": transition.stage,
        "message": transition.message,
        "externalStatus": changes.get("externalStatus", ""),
        "externalStatusCode": changes.get("externalStatusCode", ""),
        "externalPartyId": getattr(outcome, "partyId", "") or claimed.externalPartyId,
    }
    log(event="cm_result_not_persisted", recordId=claimed.id, transactionId=ctx.transactionId,
        cmOutcome=detail["cmOutcome"], externalPartyId=detail["externalPartyId"])
    try:
        _record_activity(claimed.id, action, OUTCOME_RESULT_NOT_PERSISTED, ctx, from_stage, claimed.stage,
                         detail, started)
    except RedisError as log_err:
        log(event="cm_result_activity_failed", recordId=claimed.id, transactionId=ctx.transactionId,
            error=str(log_err)[:200], cmOutcome=detail["cmOutcome"], externalPartyId=detail["externalPartyId"])


def _finish_cm_step(claimed: OnboardingRecord, outcome: sm.Outcome, action: str, ctx: RequestContext,
                    from_stage: str, started: float) -> StepResult:
    """Apply a CM outcome to a record sitting in RELEASE_TO_CM and log it."""
    transition = sm.apply(claimed.stage, outcome)
    changes = sm.partial_update(claimed, transition, outcome)
    try:
        updated = _persist_result(claimed.id, claimed.stage, changes)
    except (StageConflict, RedisError) as e:
        _record_unpersisted(claimed, outcome, transition, changes, action, ctx, from_stage, e, started)
        raise

    label = _outcome_label(outcome)
    detail = {
        "message": transition.message,
        "externalStatus": updated.externalStatus,
        "externalStatusCode": updated.externalStatusCode,
    }
    if "externalPartyId" in changes:
        detail["externalPartyId"] = changes["externalPartyId"]
    activity = _record_activity(claimed.id, action, label, ctx, from_stage, updated.stage, detail, started)

    if "externalPartyId" in changes:
        _signal_local_user(updated)

    return StepResult(updated, activity, label, transition.message)


def submit_initial(record: OnboardingRecord, ctx: RequestContext) -> StepResult:
    started = time.monotonic()
    record = replace(
        record,
        id=_clean(record.id) or uuid.uuid4().hex,
        entityKind=_clean(record.entityKind).upper(),
        contactMedia=build_contact_media(record),
        addresses=build_addresses(record),
    )
    try:
        validate_mandatory(record)
        if record.stage not in ("", sm.CAPTURED):
            raise StageConflict(f"New records start at {sm.CAPTURED}, got {record.stage}", record_id=record.id,
                                stage=record.stage)
        record = replace(
            record,
            stage=sm.CAPTURED,
            status=sm.STATUS_CAPTURED,
            externalPartyId="",
            externalStatus="",
            externalStatusCode="",
            externalErrorReason="",
            externalStatusMsg="",
            createdAt=now_ms(),
            createdBy=ctx.actorId,
        )
        insert_record(record)
    except (ValidationError, StageConflict) as e:
        _reject(record, ACTION_SUBMIT, ctx, e, started)
        raise

    activity = _record_activity(record.id, ACTION_SUBMIT, OUTCOME_SUCCESS, ctx, "", sm.CAPTURED,
                                {"entityKind": record.entityKind, "typeDiscriminator": record.typeDiscriminator},
                                started)
    return StepResult(record, activity, OUTCOME_SUCCESS, "Captured")


def release_to_kyc(record: OnboardingRecord, ctx: RequestContext) -> StepResult:
    return _apply_local(record, sm.KycRelease(), ACTION_KYC, ctx, time.monotonic())


def approve(record: OnboardingRecord, ctx: RequestContext) -> StepResult:
    started = time.monotonic()
    if record.stage not in sm.APPROVABLE_STAGES:
        err = StageConflict(f"Record {record.id} cannot be approved from stage {record.stage}",
                            record_id=record.id, stage=record.stage)
        _reject(record, ACTION_APPROVE, ctx, err, started)
        raise err

    if record.is_parent:
        return _apply_local(record, sm.InternalCompletion(), ACTION_APPROVE, ctx, started)
    return _dispatch_to_cm(record, ACTION_APPROVE, ctx, started)


def retry(record: OnboardingRecord, ctx: RequestContext) -> StepResult:
    """Resubmit to CM. The record was validated at submission, so no business re-validation."""
    started = time.monotonic()
    if record.stage != sm.RETRY:
        err = StageConflict(f"Record {record.id} is not awaiting retry (stage {record.stage})",
                            record_id=record.id, stage=record.stage)
        _reject(record, ACTION_RETRY, ctx, err, started)
        raise err
    return _dispatch_to_cm(record, ACTION_RETRY, ctx, started)


def requeue(record: OnboardingRecord, ctx: RequestContext) -> StepResult:
    """Move a FAILED record back to RETRY after its data has been corrected."""
    return _apply_local(record, sm.Requeue(), ACTION_REQUEUE, ctx, time.monotonic())


def _lookup_outcome(record: OnboardingRecord, ctx: RequestContext) -> sm.Outcome:
    try:
        resp = cm_client.lookup_party(record.externalPartyId, record.id, transaction_id=ctx.transactionId)
    except ExternalBusinessError as e:
        return sm.ExternalBusinessFailure(code=e.code, reason=e.reason, message=e.message)
    except ExternalConnectivityError as e:
        log(event="cm_connectivity_error", externalReference=record.id, transactionId=ctx.transactionId,
            kind=e.kind, detail=e.detail[:200])
        return sm.ExternalConnectivityFailure(kind=e.kind, detail=e.detail)
    if resp is None:
        return sm.ExternalAbsent()
    return sm.ExternalSuccess(status=resp.status, partyId=resp.partyId, message=resp.message)


def sync(record: OnboardingRecord, ctx: RequestContext) -> StepResult:
    """
    Re-read a RELEASE_TO_CM record from CM and apply what CM holds now.

    Moves an in-progress (P) record on once CM completes it, and recovers a
    dispatch whose result never reached the record. A party CM has never
    heard of sends the record to RETRY; an unreachable CM changes nothing.
    """
    started = time.monotonic()
    if record.stage != sm.RELEASE_TO_CM:
        err = StageConflict(f"Record {record.id} is not with CM (stage {record.stage})",
                            record_id=record.id, stage=record.stage)
        _reject(record, ACTION_SYNC, ctx, err, started)
        raise err

    outcome = _lookup_outcome(record, ctx)
    if not isinstance(outcome, sm.ExternalConnectivityFailure):
        return _finish_cm_step(record, outcome, ACTION_SYNC, ctx, record.stage, started)

    try:
        updated = update_partial(record.id, record.stage, sm.mirror_fields(outcome, sm.CONNECTIVITY_MESSAGE),
                                 sm.MIRROR_FIELDS)
    except StageConflict as e:
        _reject(record, ACTION_SYNC, ctx, e, started)
        raise
    activity = _record_activity(record.id, ACTION_SYNC, OUTCOME_TRANSIENT_FAILURE, ctx, record.stage,
                                updated.stage, {"message": sm.CONNECTIVITY_MESSAGE, "kind": outcome.kind}, started)
    return StepResult(updated, activity, OUTCOME_TRANSIENT_FAILURE, sm.CONNECTIVITY_MESSAGE)


def update(record: OnboardingRecord, changes: Dict[str, Any], ctx: RequestContext) -> StepResult:
    """
    Edit business fields. Records already known to CM (and not parent-type)
    are updated in CM first; local changes are only persisted when CM accepts.
    """
    started = time.monotonic()
    from_stage = record.stage
    try:
        illegal = sorted(k for k in changes if k not in EDITABLE_FIELDS)
        if illegal:
            raise ValidationError(f"Fields cannot be edited: {', '.join(illegal)}", illegal)
        merged = replace(record, **changes)
        merged = replace(merged, contactMedia=build_contact_media(merged), addresses=build_addresses(merged))
        validate_mandatory(merged)
        diff = diff_fields(record, merged)
        needs_cm = bool(diff) and not record.is_parent and bool(record.externalPartyId)
        request = build_update_request(merged, current_table()) if needs_cm else None
    except (ValidationError, TranslationMiss) as e:
        _reject(record, ACTION_UPDATE, ctx, e, started)
        raise

    if not diff:
        activity = _record_activity(record.id, ACTION_UPDATE, OUTCOME_SUCCESS, ctx, from_stage, from_stage,
                                    {"diff": [], "applied": False}, started)
        return StepResult(record, activity, OUTCOME_SUCCESS, "No changes")

    mirror: Dict[str, Any] = {}
    label = OUTCOME_SUCCESS
    message = "Updated"
    if needs_cm:
        outcome = _call_cm(cm_client.update_onboarding, request, ctx)
        label = _outcome_label(outcome)
        if isinstance(outcome, sm.ExternalBusinessFailure):
            message = default_classifier().classify(outcome.code, outcome.message).userMessage
        elif isinstance(outcome, sm.ExternalConnectivityFailure):
            message = sm.CONNECTIVITY_MESSAGE
        else:
            message = outcome.message or CM_UPDATE_ACCEPTED
        mirror = sm.mirror_fields(outcome, message)

    applied = label in (OUTCOME_SUCCESS, OUTCOME_IN_PROGRESS)
    if applied:
        local = {d["field"]: d["to"] for d in diff}
        local.update(contactMedia=merged.contactMedia, addresses=merged.addresses)
        write, allowed = {**local, **mirror}, EDITABLE_FIELDS | DERIVED_FIELDS | sm.MIRROR_FIELDS
    else:
        # CM refused: keep local data as it was, only mirror what CM said
        write, allowed = mirror, sm.MIRROR_FIELDS

    try:
        updated = update_partial(record.id, from_stage, write, allowed)
    except StageConflict as e:
        _reject(record, ACTION_UPDATE, ctx, e, started)
        raise

    detail = {"diff": diff, "applied": applied, "cmCalled": needs_cm, "message": message}
    log(event="record_fields_changed", recordId=record.id, transactionId=ctx.transactionId,
        diff=diff, applied=applied)
    activity = _record_activity(record.id, ACTION_UPDATE, label, ctx, from_stage, updated.stage, detail, started)
    return StepResult(updated, activity, label, message)
