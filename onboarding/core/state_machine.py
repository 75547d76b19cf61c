"""
Onboarding stage state machine.

CAPTURED -> RELEASE_TO_KYC -> RELEASE_TO_CM -> COMPLETED
RELEASE_TO_CM -> RETRY -> RELEASE_TO_CM
RELEASE_TO_CM -> FAILED -> (requeue) RETRY
RELEASE_TO_CM -> (sync) COMPLETED | RETRY | FAILED

Transitions are driven by tagged outcomes and computed by apply(), which is a
pure function of (stage, outcome). The orchestrator turns the resulting
Transition into an allowlisted partial update.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from onboarding.core.error_classifier import ErrorClassifier, default_classifier
from onboarding.core.errors import StageConflict
from onboarding.store.models import PARENT, OnboardingRecord

# Stages
CAPTURED = "CAPTURED"
RELEASE_TO_KYC = "RELEASE_TO_KYC"
RELEASE_TO_CM = "RELEASE_TO_CM"
RETRY = "RETRY"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

STAGES = (CAPTURED, RELEASE_TO_KYC, RELEASE_TO_CM, RETRY, COMPLETED, FAILED)
TERMINAL_STAGES = frozenset({COMPLETED, FAILED})
APPROVABLE_STAGES = frozenset({CAPTURED, RELEASE_TO_KYC})

# Status summaries
STATUS_CAPTURED = "CAPTURED"
STATUS_PENDING = "PENDING"
STATUS_SUCCESS = "SUCCESS"
STATUS_RETRY = "RETRY"
STATUS_FAILED = "FAILED"

# CM response status codes
CM_COMPLETE = "S"
CM_IN_PROGRESS = "P"
CM_FAILURE = "F"

CONNECTIVITY_STATUS_CODE = "CM_UNAVAILABLE"
CONNECTIVITY_MESSAGE = "CM could not be reached. Please try again later."

ABSENT_STATUS_CODE = "CM_NOT_FOUND"
ABSENT_MESSAGE = "CM holds no party for this record. It can be resubmitted."

# The only fields a stage transition may write
TRANSITION_FIELDS = frozenset({
    "stage",
    "status",
    "externalPartyId",
    "externalStatus",
    "externalStatusCode",
    "externalErrorReason",
    "externalStatusMsg",
})
MIRROR_FIELDS = frozenset({
    "externalStatus",
    "externalStatusCode",
    "externalErrorReason",
    "externalStatusMsg",
})


# --- Outcomes (tagged variant) ---------------------------------------------

@dataclass(frozen=True)
class KycRelease:
    pass


@dataclass(frozen=True)
class Dispatch:
    """Claim the record for a CM call."""
    typeDiscriminator: str = ""


@dataclass(frozen=True)
class ExternalSuccess:
    status: str
    partyId: str = ""
    message: str = ""


@dataclass(frozen=True)
class ExternalBusinessFailure:
    code: str
    reason: str = ""
    message: str = ""


@dataclass(frozen=True)
class ExternalConnectivityFailure:
    kind: str
    detail: str = ""


@dataclass(frozen=True)
class ExternalAbsent:
    """CM was asked and has no party for the record."""
    pass


@dataclass(frozen=True)
class InternalCompletion:
    """Parent-type records complete without CM."""
    pass


@dataclass(frozen=True)
class Requeue:
    pass


Outcome = Union[
    KycRelease,
    Dispatch,
    ExternalSuccess,
    ExternalBusinessFailure,
    ExternalConnectivityFailure,
    ExternalAbsent,
    InternalCompletion,
    Requeue,
]


@dataclass(frozen=True)
class Transition:
    stage: str
    status: str
    message: str = ""


# Legal source stages per outcome type
_SOURCES = {
    KycRelease: frozenset({CAPTURED}),
    Dispatch: frozenset({CAPTURED, RELEASE_TO_KYC, RETRY}),
    ExternalSuccess: frozenset({RELEASE_TO_CM}),
    ExternalBusinessFailure: frozenset({RELEASE_TO_CM}),
    ExternalConnectivityFailure: frozenset({RELEASE_TO_CM}),
    ExternalAbsent: frozenset({RELEASE_TO_CM}),
    InternalCompletion: frozenset({CAPTURED, RELEASE_TO_KYC}),
    Requeue: frozenset({FAILED}),
}


def can_apply(stage: str, outcome: Outcome) -> bool:
    return stage in _SOURCES.get(type(outcome), frozenset())


def apply(stage: str, outcome: Outcome, classifier: Optional[ErrorClassifier] = None) -> Transition:
    """Compute the next (stage, status, message). Never performs I/O."""
    if not can_apply(stage, outcome):
        raise StageConflict(f"{type(outcome).__name__} is not allowed from stage {stage or '<none>'}", stage=stage)

    if isinstance(outcome, KycRelease):
        return Transition(RELEASE_TO_KYC, STATUS_PENDING, "Released to KYC")

    if isinstance(outcome, Dispatch):
        if (outcome.typeDiscriminator or "").strip().upper() == PARENT:
            raise StageConflict("Parent-type records are never released to CM", stage=stage)
        return Transition(RELEASE_TO_CM, STATUS_PENDING, "Submitted to CM")

    if isinstance(outcome, ExternalSuccess):
        if outcome.status == CM_COMPLETE:
            return Transition(COMPLETED, STATUS_SUCCESS, outcome.message or "Onboarding completed in CM")
        if outcome.status == CM_IN_PROGRESS:
            return Transition(RELEASE_TO_CM, STATUS_SUCCESS, outcome.message or "Accepted by CM, processing")
        raise ValueError(f"Unexpected CM success status {outcome.status!r}")

    if isinstance(outcome, ExternalBusinessFailure):
        verdict = (classifier or default_classifier()).classify(outcome.code, outcome.message)
        if verdict.retryable:
            return Transition(RETRY, STATUS_RETRY, verdict.userMessage)
        return Transition(FAILED, STATUS_FAILED, verdict.userMessage)

    if isinstance(outcome, ExternalConnectivityFailure):
        return Transition(RETRY, STATUS_RETRY, CONNECTIVITY_MESSAGE)

    if isinstance(outcome, ExternalAbsent):
        return Transition(RETRY, STATUS_RETRY, ABSENT_MESSAGE)

    if isinstance(outcome, InternalCompletion):
        return Transition(COMPLETED, STATUS_SUCCESS, "Parent record completed without CM")

    # Requeue
    return Transition(RETRY, STATUS_RETRY, "Requeued for CM resubmission")


def mirror_fields(outcome: Outcome, message: str) -> Dict[str, Any]:
    """The CM response mirror, overwritten on every CM call attempt."""
    if isinstance(outcome, ExternalSuccess):
        return {
            "externalStatus": outcome.status,
            "externalStatusCode": "",
            "externalErrorReason": "",
            "externalStatusMsg": message,
        }
    if isinstance(outcome, ExternalBusinessFailure):
        return {
            "externalStatus": CM_FAILURE,
            "externalStatusCode": outcome.code,
            "externalErrorReason": outcome.reason or outcome.message,
            "externalStatusMsg": message,
        }
    if isinstance(outcome, ExternalConnectivityFailure):
        return {
            "externalStatus": "",
            "externalStatusCode": CONNECTIVITY_STATUS_CODE,
            "externalErrorReason": f"CM connectivity failure ({outcome.kind})",
            "externalStatusMsg": message,
        }
    if isinstance(outcome, ExternalAbsent):
        return {
            "externalStatus": "",
            "externalStatusCode": ABSENT_STATUS_CODE,
            "externalErrorReason": "CM has no party for this record",
            "externalStatusMsg": message,
        }
    return {}


def partial_update(record: OnboardingRecord, transition: Transition, outcome: Outcome) -> Dict[str, Any]:
    """
    Changes a transition is allowed to make. Only TRANSITION_FIELDS appear;
    externalPartyId is written once, when CM first returns it.
    """
    changes: Dict[str, Any] = {"stage": transition.stage, "status": transition.status}
    changes.update(mirror_fields(outcome, transition.message))
    if isinstance(outcome, ExternalSuccess) and outcome.partyId and not record.externalPartyId:
        changes["externalPartyId"] = outcome.partyId
    return {k: v for k, v in changes.items() if k in TRANSITION_FIELDS}
